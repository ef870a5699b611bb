"""Character generation: main first, isolated batches, cancellation and deletion."""

from pathlib import Path

import pytest

from studio.artifacts import Failed, Ready, is_ready, ready_url
from studio.errors import ConflictError, TransitionError, ValidationError
from studio.jobs import JOBS
from studio.models import Character, ProjectStatus
from studio.services import characters, workflow

from .conftest import permanent, transient

S = ProjectStatus


async def _with_main(db, client, store, make_project, **kw):
    project = await make_project(**kw)
    result = await characters.generate_character(db, client, store, project.id, project.main_character.id)
    assert result.ok
    return project


async def test_main_character_commits_directly_and_gets_a_sketch(db, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    main = project.main_character

    assert is_ready(main.image)
    assert is_ready(main.sketch)
    assert "named Milo" in provider.instruction(0)
    assert provider.images(0) == []  # no style anchor for the main character
    assert provider.calls[0]["aspect_ratio"] == "9:16"
    assert len(provider.sketch_calls) == 1
    path = store.path_for_url(ready_url(main.image))
    assert (Path(store.upload_root) / path).read_bytes() == b"colored-1"


async def test_secondary_needs_main_image(db, client, store, make_project):
    project = await make_project()
    fox = project.characters[1]
    with pytest.raises(ValidationError):
        await characters.generate_character(db, client, store, project.id, fox.id)


async def test_batch_generates_secondaries_anchored_on_main(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    await workflow.start_character_generation(db, project.id)

    batch = await characters.generate_characters(db, client, store, project.id, session_maker=session_maker)
    assert (batch.generated, batch.failed, batch.cancelled) == (2, 0, 0)
    assert batch.advanced
    assert project.status == S.character_generation_complete
    main_url = ready_url(project.main_character.image)
    for call in provider.calls[1:]:
        assert call["parts"][1].data == f"img:{main_url}".encode()
        assert "exact style of the reference" in call["parts"][-1].text


async def test_failed_item_does_not_sink_the_batch(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    await workflow.start_character_generation(db, project.id)
    provider.fail_for["Fox"] = permanent()

    batch = await characters.generate_characters(db, client, store, project.id, session_maker=session_maker)
    fox, owl = project.characters[1], project.characters[2]
    assert (batch.generated, batch.failed) == (1, 1)
    assert not batch.advanced
    assert project.status == S.character_generation
    assert isinstance(fox.image, Failed)
    assert is_ready(owl.image)


async def test_transient_failure_is_retried_inside_the_item(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project, secondaries=("Fox",))
    await workflow.start_character_generation(db, project.id)
    provider.fail = [transient()]

    batch = await characters.generate_characters(db, client, store, project.id, session_maker=session_maker)
    assert batch.generated == 1
    assert project.status == S.character_generation_complete


async def test_failure_never_replaces_a_committed_image(db, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project, secondaries=())
    main = project.main_character
    before = main.image
    provider.fail_for["Milo"] = permanent()

    result = await characters.generate_character(db, client, store, project.id, main.id)
    assert not result.ok
    assert main.image == before


async def test_regeneration_waits_for_a_decision(db, client, store, make_project):
    project = await _with_main(db, client, store, make_project, secondaries=())
    main = project.main_character
    old = ready_url(main.image)

    result = await characters.generate_character(db, client, store, project.id, main.id)
    assert result.ok and result.comparison_id is not None
    assert ready_url(main.image) == old
    with pytest.raises(ConflictError):
        await characters.generate_character(db, client, store, project.id, main.id)


async def test_cancelled_job_skips_queued_items(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    await workflow.start_character_generation(db, project.id)
    job = JOBS.new(project.id, total=2)
    JOBS.cancel(job.id)

    batch = await characters.generate_characters(
        db, client, store, project.id, job_id=job.id, session_maker=session_maker,
    )
    assert batch.cancelled == 2
    assert not batch.advanced
    assert len(provider.calls) == 1  # only the main character
    assert project.status == S.character_generation


async def test_generation_job_tracks_progress(db, session_maker, client, store, make_project):
    project = await _with_main(db, client, store, make_project)
    await workflow.start_character_generation(db, project.id)
    job = JOBS.new(project.id, total=2)

    await characters.run_generation_job(client, store, project.id, job.id, session_maker=session_maker)
    job = JOBS.get(job.id)
    assert job.status == "done"
    assert (job.generated, job.failed) == (2, 0)
    assert job.progress == 1.0
    await db.refresh(project)
    assert project.status == S.character_generation_complete


async def test_begin_generation_needs_work(db, client, store, session_maker, make_project):
    project = await _with_main(db, client, store, make_project, secondaries=())
    with pytest.raises(ValidationError):
        await characters.begin_generation(db, client, store, project.id, session_maker=session_maker)


async def test_batch_requires_main_image(db, session_maker, client, store, make_project):
    project = await make_project()
    with pytest.raises(TransitionError):
        await characters.generate_characters(db, client, store, project.id, session_maker=session_maker)


async def test_pending_comparison_fails_only_its_item(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    fox, owl = project.characters[1], project.characters[2]
    await characters.generate_character(db, client, store, project.id, fox.id)
    staged = await characters.generate_character(db, client, store, project.id, fox.id)
    assert staged.comparison_id is not None
    calls_before = len(provider.calls)

    batch = await characters.generate_characters(
        db, client, store, project.id, character_ids=[fox.id, owl.id], session_maker=session_maker,
    )
    by_id = {i.character_id: i for i in batch.items}
    assert (batch.generated, batch.failed) == (1, 1)
    assert "comparison" in by_id[fox.id].error
    assert by_id[owl.id].ok and is_ready(owl.image)
    assert len(provider.calls) == calls_before + 1


async def test_concurrent_edit_does_not_sink_the_batch(db, session_maker, client, store, provider, make_project):
    project = await _with_main(db, client, store, make_project)
    await workflow.start_character_generation(db, project.id)
    fox = project.characters[1]
    sketch = provider.transform
    touched = []

    async def edit_fox_mid_sketch(image, instruction, *, output_size=None):
        if not touched and f"/characters/{fox.id}/".encode() in image.data:
            touched.append(fox.id)
            async with session_maker() as other:
                row = await other.get(Character, fox.id)
                row.feedback_notes = "edited elsewhere"
                row.version += 1
                await other.commit()
        return await sketch(image, instruction, output_size=output_size)

    provider.transform = edit_fox_mid_sketch
    batch = await characters.generate_characters(db, client, store, project.id, session_maker=session_maker)

    assert touched == [fox.id]
    assert (batch.generated, batch.failed) == (2, 0)
    assert batch.advanced
    assert all(is_ready(c.image) for c in project.characters)
    async with session_maker() as fresh:
        stored = await fresh.get(Character, fox.id)
        assert stored.feedback_notes == "edited elsewhere"
        assert is_ready(stored.sketch)


async def test_delete_character(db, client, store, make_project):
    project = await _with_main(db, client, store, make_project, secondaries=("Fox",), cast=("Fox",))
    fox = project.characters[1]
    assert project.pages[0].characters == [fox]
    await characters.generate_character(db, client, store, project.id, fox.id)
    image_path = Path(store.upload_root) / store.path_for_url(ready_url(fox.image))
    stale = image_path.parent / "sketch-stale.png"
    stale.write_bytes(b"old sketch")

    with pytest.raises(ValidationError):
        await characters.delete_character(db, store, project.id, project.main_character.id)
    await characters.delete_character(db, store, project.id, fox.id)
    assert [c.name for c in project.characters] == ["Milo"]
    assert project.pages[0].characters == []
    assert not image_path.exists()
    assert not image_path.parent.exists()


async def test_failed_artifact_leaves_main_generation_possible(db, client, store, provider, make_project):
    project = await make_project()
    provider.fail_for["Milo"] = permanent()
    result = await characters.generate_character(db, client, store, project.id, project.main_character.id)
    assert not result.ok
    assert isinstance(project.main_character.image, Failed)

    del provider.fail_for["Milo"]
    result = await characters.generate_character(db, client, store, project.id, project.main_character.id)
    assert result.ok and result.comparison_id is None
    assert isinstance(project.main_character.image, Ready)
