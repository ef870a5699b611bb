from studio.jobs import JobStore


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_finished_jobs_expire_after_ttl():
    clock = Clock()
    jobs = JobStore(ttl=60, max_finished=10, clock=clock)
    old = jobs.new(1, total=1)
    jobs.set(old.id, status="done")
    running = jobs.new(2, total=1)
    jobs.set(running.id, status="running")

    clock.now += 61
    jobs.new(3)
    assert jobs.get(old.id) is None
    assert jobs.get(running.id) is running
    assert jobs.active_for(2) is running


def test_recent_finished_job_is_still_pollable():
    clock = Clock()
    jobs = JobStore(ttl=60, max_finished=10, clock=clock)
    job = jobs.new(1)
    jobs.set(job.id, status="cancelled")
    finished_at = job.finished_at

    clock.now += 30
    jobs.set(job.id, error="late")
    jobs.new(2)
    assert jobs.get(job.id) is job
    assert job.finished_at == finished_at


def test_finished_jobs_are_capped_oldest_first():
    clock = Clock()
    jobs = JobStore(ttl=3600, max_finished=2, clock=clock)
    ids = []
    for n in range(3):
        clock.now += 1
        j = jobs.new(n)
        jobs.set(j.id, status="error", error="boom")
        ids.append(j.id)

    assert jobs.prune() == 1
    assert jobs.get(ids[0]) is None
    assert all(jobs.get(i) is not None for i in ids[1:])


def test_unfinished_jobs_are_never_pruned():
    clock = Clock()
    jobs = JobStore(ttl=0, max_finished=0, clock=clock)
    queued = jobs.new(1)
    clock.now += 10_000
    assert jobs.prune() == 0
    assert jobs.get(queued.id) is queued
