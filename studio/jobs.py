# studio/jobs.py
from dataclasses import dataclass, field
from typing import Callable, Optional, Dict, List
import uuid, time, threading

from .settings.config import settings

FINISHED = ("done", "cancelled", "error")


@dataclass
class Job:
    id: str
    project_id: int
    kind: str = "characters"     # characters|sketch
    status: str = "queued"       # queued|running|done|cancelled|error
    total: int = 0
    generated: int = 0
    failed: int = 0
    cancel_requested: bool = False
    error: Optional[str] = None
    results: List[dict] = field(default_factory=list)
    finished_at: Optional[float] = None

    @property
    def progress(self) -> float:
        if not self.total:
            return 0.0
        return (self.generated + self.failed) / self.total

    @property
    def finished(self) -> bool:
        return self.status in FINISHED


class JobStore:
    """In-process job table. Finished jobs are forgotten after ``ttl`` seconds or once
    more than ``max_finished`` of them pile up, oldest first."""

    def __init__(self, *, ttl: Optional[float] = None, max_finished: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self.ttl = settings.JOB_TTL_SECONDS if ttl is None else ttl
        self.max_finished = settings.JOB_MAX_FINISHED if max_finished is None else max_finished
        self._clock = clock

    def new(self, project_id: int, *, kind: str = "characters", total: int = 0) -> Job:
        j = Job(id=str(uuid.uuid4()), project_id=project_id, kind=kind, total=total)
        with self._lock:
            self._prune()
            self._jobs[j.id] = j
        return j

    def get(self, jid: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(jid)

    def set(self, jid: str, **kw):
        with self._lock:
            j = self._jobs.get(jid)
            if not j:
                return
            for k, v in kw.items():
                setattr(j, k, v)
            if j.finished and j.finished_at is None:
                j.finished_at = self._clock()

    def record(self, jid: str, result: dict):
        with self._lock:
            j = self._jobs.get(jid)
            if not j:
                return
            j.results.append(result)
            if result.get("ok"):
                j.generated += 1
            else:
                j.failed += 1

    def cancel(self, jid: str) -> bool:
        with self._lock:
            j = self._jobs.get(jid)
            if not j or j.finished:
                return False
            j.cancel_requested = True
            return True

    def is_cancelled(self, jid: Optional[str]) -> bool:
        if jid is None:
            return False
        with self._lock:
            j = self._jobs.get(jid)
            return bool(j and j.cancel_requested)

    def active_for(self, project_id: int, kind: str = "characters") -> Optional[Job]:
        with self._lock:
            for j in self._jobs.values():
                if j.project_id == project_id and j.kind == kind and not j.finished:
                    return j
        return None

    def prune(self) -> int:
        with self._lock:
            return self._prune()

    def _prune(self) -> int:
        # caller holds the lock; running jobs are never dropped
        done = sorted(
            (j for j in self._jobs.values() if j.finished_at is not None),
            key=lambda j: j.finished_at,
        )
        cutoff = self._clock() - self.ttl
        expired = [j for j in done if j.finished_at <= cutoff]
        kept = [j for j in done if j.finished_at > cutoff]
        overflow = len(kept) - self.max_finished
        if overflow > 0:
            expired.extend(kept[:overflow])
        for j in expired:
            del self._jobs[j.id]
        return len(expired)


JOBS = JobStore()
