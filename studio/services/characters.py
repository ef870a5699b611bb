"""Character image generation: single regenerations and isolated batches."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..artifacts import Failed, is_ready, ready_url
from ..background import spawn
from ..database import async_session_maker, commit
from ..errors import ConflictError, NotFoundError, ProviderError, StudioError, ValidationError
from ..jobs import JOBS, Job
from ..models import Character, Project, ReviewTarget
from ..settings.config import settings
from . import comparison, sketches
from .generation.client import GenerationClient
from .generation.compositor import GenerationRequest
from .generation.prompts import character_instruction
from .storage import BlobStore, ProjectBucketsStrategy, remove_url
from .workflow import (
    advance_after_batch, ensure_can_generate_characters, load_project, mark_regenerated, start_character_generation,
)

logger = logging.getLogger(__name__)

PATHS = ProjectBucketsStrategy()


@dataclass(slots=True)
class ItemResult:
    character_id: int
    ok: bool
    url: Optional[str] = None
    error: Optional[str] = None
    comparison_id: Optional[int] = None
    skipped: bool = False

    def as_dict(self) -> dict:
        return {
            "character_id": self.character_id,
            "ok": self.ok,
            "url": self.url,
            "error": self.error,
            "comparison_id": self.comparison_id,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class BatchResult:
    items: list[ItemResult] = field(default_factory=list)
    advanced: bool = False

    @property
    def generated(self) -> int:
        return sum(1 for i in self.items if i.ok)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if not i.ok and not i.skipped)

    @property
    def cancelled(self) -> int:
        return sum(1 for i in self.items if i.skipped)


def build_request(character: Character, main: Optional[Character]) -> GenerationRequest:
    """The main character's image is the style anchor of every other character."""
    anchor = None
    if not character.is_main:
        if main is None or not is_ready(main.image):
            raise ValidationError("Generate the main character before the others")
        anchor = ready_url(main.image)
    instruction = character.generation_prompt or character_instruction(
        character.name, character.role, character.description, styled=anchor is not None,
    )
    return GenerationRequest(
        instruction=instruction,
        anchor_url=anchor,
        aspect_ratio=settings.CHARACTER_ASPECT_RATIO,
    )


def select_targets(project: Project, character_ids: Optional[Iterable[int]]) -> list[Character]:
    if character_ids is None:
        return [c for c in project.characters if not c.is_main and not is_ready(c.image)]
    by_id = {c.id: c for c in project.characters}
    targets = []
    for cid in character_ids:
        if cid not in by_id:
            raise NotFoundError(f"Character {cid} not found in project {project.id}")
        targets.append(by_id[cid])
    return targets


async def _generate_one(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    project: Project,
    character: Character,
    request: GenerationRequest,
    lock: asyncio.Lock,
) -> ItemResult:
    try:
        data = await client.generate(request)
        url = await store.put(PATHS.character_path(project.id, character.id, "image"), data, "image/png")
    except (ProviderError, OSError) as exc:
        message = exc.message if isinstance(exc, ProviderError) else f"Could not store image: {exc}"
        logger.warning("character %s generation failed: %s", character.label, message)
        async with lock:
            # a failed regeneration never replaces a committed image
            if not is_ready(character.image):
                character.image = Failed(message)
                await commit(db)
        return ItemResult(character.id, ok=False, error=message)

    async with lock:
        outcome = await comparison.stage_artifact(db, project, character, url)
        await commit(db)
    if outcome.committed:
        try:
            await sketches.derive_sketch(db, client, store, character, lock=lock)
        except StudioError as exc:
            # the image is committed; the sketch can be retried on its own
            logger.warning("sketch for %s not saved: %s", character.label, exc.message)
        return ItemResult(character.id, ok=True, url=url)
    return ItemResult(character.id, ok=True, url=url, comparison_id=outcome.draft.id)


async def _generate_isolated(
    session_maker: async_sessionmaker,
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    character_id: int,
    request: GenerationRequest,
    lock: asyncio.Lock,
) -> ItemResult:
    """One batch item in its own session, so a failed write cannot touch its siblings."""
    try:
        async with session_maker() as db:
            project = await load_project(db, project_id)
            (character,) = select_targets(project, [character_id])
            if await comparison.pending_draft(db, character) is not None:
                raise ConflictError(f"{character.label} already has a comparison waiting for a decision")
            return await _generate_one(db, client, store, project, character, request, lock)
    except StudioError as exc:
        logger.warning("character %s generation failed: %s", character_id, exc.message)
        return ItemResult(character_id, ok=False, error=exc.message)


async def generate_characters(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    *,
    character_ids: Optional[Iterable[int]] = None,
    job_id: Optional[str] = None,
    session_maker: async_sessionmaker = async_session_maker,
) -> BatchResult:
    """Generate many characters at once.

    Items are independent: each runs in its own session, a failure is
    recorded on that character and the rest carry on. The project only
    advances when every item succeeded.
    """
    project = await load_project(db, project_id)
    targets = select_targets(project, character_ids)
    if any(not c.is_main for c in targets):
        ensure_can_generate_characters(project)
    main = project.main_character
    requests = {c.id: build_request(c, main) for c in targets}

    lock = asyncio.Lock()
    gate = asyncio.Semaphore(settings.GENERATION_CONCURRENCY)

    async def run(character: Character) -> ItemResult:
        async with gate:
            # checked once the slot is ours so queued items honour a late cancel
            if JOBS.is_cancelled(job_id):
                return ItemResult(character.id, ok=False, error="cancelled", skipped=True)
            result = await _generate_isolated(
                session_maker, client, store, project.id, character.id, requests[character.id], lock,
            )
        if job_id:
            JOBS.record(job_id, result.as_dict())
        return result

    items = list(await asyncio.gather(*(run(c) for c in targets)))
    batch = BatchResult(items)

    async with lock:
        # items were written through their own sessions
        for character in targets:
            await db.refresh(character, ["image", "sketch", "version"])
        batch.advanced = advance_after_batch(project, generated=batch.generated, failed=batch.failed + batch.cancelled)
        if batch.advanced:
            await commit(db)
    logger.info(
        "project %s character batch: %d generated, %d failed, %d cancelled%s",
        project.id, batch.generated, batch.failed, batch.cancelled, " (advanced)" if batch.advanced else "",
    )
    return batch


async def run_generation_job(
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    job_id: str,
    *,
    character_ids: Optional[Iterable[int]] = None,
    session_maker: async_sessionmaker = async_session_maker,
) -> Optional[BatchResult]:
    JOBS.set(job_id, status="running")
    try:
        async with session_maker() as db:
            batch = await generate_characters(
                db, client, store, project_id,
                character_ids=character_ids, job_id=job_id, session_maker=session_maker,
            )
    except Exception as exc:  # noqa: BLE001
        logger.exception("generation job %s failed", job_id)
        JOBS.set(job_id, status="error", error=str(exc))
        return None
    JOBS.set(job_id, status="cancelled" if batch.cancelled else "done")
    return batch


def launch_generation_job(
    client: GenerationClient,
    store: BlobStore,
    project: Project,
    *,
    character_ids: Optional[Iterable[int]] = None,
    session_maker: async_sessionmaker = async_session_maker,
) -> Job:
    """Queue a batch for ``project`` and run it in the background."""
    if JOBS.active_for(project.id) is not None:
        raise ConflictError("A character batch is already running for this project")
    ids = list(character_ids) if character_ids is not None else None
    total = len(select_targets(project, ids))
    job = JOBS.new(project.id, total=total)
    spawn(
        run_generation_job(client, store, project.id, job.id, character_ids=ids, session_maker=session_maker),
        name=f"characters:{project.id}:{job.id}",
        on_error=lambda exc: JOBS.set(job.id, status="error", error=str(exc)),
    )
    logger.info("project %s: queued character job %s (%d items)", project.id, job.id, total)
    return job


async def begin_generation(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    *,
    session_maker: async_sessionmaker = async_session_maker,
) -> Job:
    """Move the project into character generation and queue every secondary without an image."""
    project = await load_project(db, project_id)
    if not select_targets(project, None):
        raise ValidationError("Every character already has an image")
    if JOBS.active_for(project.id) is not None:
        raise ConflictError("A character batch is already running for this project")
    await start_character_generation(db, project.id)
    return launch_generation_job(client, store, project, session_maker=session_maker)


async def generate_character(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    character_id: int,
) -> ItemResult:
    """Single (re)generation, used for the main character and operator retries."""
    project = await load_project(db, project_id)
    (character,) = select_targets(project, [character_id])
    if await comparison.pending_draft(db, character) is not None:
        raise ConflictError(f"{character.label} already has a comparison waiting for a decision")
    request = build_request(character, project.main_character)
    result = await _generate_one(db, client, store, project, character, request, asyncio.Lock())
    if result.ok and result.comparison_id is None and mark_regenerated(project, ReviewTarget.characters):
        await commit(db)
    return result


async def delete_character(db: AsyncSession, store: BlobStore, project_id: int, character_id: int) -> None:
    """Remove a character, unlinking it from every page it appeared on."""
    project = await load_project(db, project_id)
    (character,) = select_targets(project, [character_id])
    if character.is_main and len(project.characters) > 1:
        raise ValidationError("The main character cannot be deleted while other characters depend on it")
    draft = await comparison.pending_draft(db, character)
    urls = [ready_url(character.image), ready_url(character.sketch)]
    if draft is not None:
        urls.append(draft.new_url)
        await db.delete(draft)
    character.pages.clear()
    project.characters.remove(character)
    await db.delete(character)
    await commit(db)
    for url in urls:
        await remove_url(store, url)
    # older sketches and discarded drafts of this character
    folder = PATHS.character_dir(project.id, character_id)
    leftovers = await store.list(folder)
    if leftovers:
        await store.remove([f"{folder}/{entry['name']}" for entry in leftovers])
    logger.info("project %s: deleted character %s", project.id, character_id)


__all__ = [
    "ItemResult",
    "BatchResult",
    "build_request",
    "select_targets",
    "generate_characters",
    "run_generation_job",
    "launch_generation_job",
    "begin_generation",
    "generate_character",
    "delete_character",
]
