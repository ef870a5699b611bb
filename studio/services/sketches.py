"""Pencil-sketch derivation for committed colored images."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..artifacts import Artifact, Failed, Ready, ready_url
from ..background import spawn
from ..database import async_session_maker, commit
from ..errors import NotFoundError, ProviderError, ValidationError
from ..models import Character, ComparisonTargetKind, Page
from .generation.client import GenerationClient
from .storage import BlobStore, ProjectBucketsStrategy, remove_url

logger = logging.getLogger(__name__)

PATHS = ProjectBucketsStrategy()


def sketch_path(record: Union[Page, Character]) -> str:
    if isinstance(record, Page):
        return PATHS.page_path(record.project_id, record.page_number, "sketch")
    return PATHS.character_path(record.project_id, record.id, "sketch")


async def derive_sketch(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    record: Union[Page, Character],
    *,
    lock=None,
) -> Optional[Artifact]:
    """Derive and store the sketch; a failure lands on the sketch only, never on the colored image."""
    source = ready_url(record.colored)
    if not source:
        raise ValidationError(f"{record.label} has no colored image to sketch")
    try:
        data = await client.derive_sketch(source)
        url = await store.put(sketch_path(record), data, "image/png", upsert=True)
        artifact: Artifact = Ready(url)
    except ProviderError as exc:
        logger.warning("sketch for %s failed: %s", record.label, exc.message)
        artifact = Failed(exc.message)
    except OSError as exc:
        logger.exception("storing sketch for %s failed", record.label)
        artifact = Failed(f"Could not store sketch: {exc}")

    async with (lock or nullcontext()):
        colored_attr = "illustration" if isinstance(record, Page) else "image"
        await db.refresh(record, [colored_attr, "sketch", "version"])
        if ready_url(record.colored) != source:
            # colored image replaced meanwhile
            logger.info("dropping sketch for %s: colored image changed to %s", record.label, ready_url(record.colored))
            if isinstance(artifact, Ready):
                await remove_url(store, artifact.url)
            return record.sketch
        record.sketch = artifact
        await commit(db)
    return artifact


async def _load(db: AsyncSession, kind: ComparisonTargetKind, record_id: int) -> Union[Page, Character]:
    model = Page if kind == ComparisonTargetKind.page else Character
    record = await db.get(model, record_id)
    if record is None:
        raise NotFoundError(f"{kind.value.capitalize()} {record_id} not found")
    return record


async def retry_sketch(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    kind: ComparisonTargetKind,
    record_id: int,
    *,
    project_id: Optional[int] = None,
) -> Artifact:
    record = await _load(db, kind, record_id)
    if project_id is not None and record.project_id != project_id:
        raise NotFoundError(f"{kind.value.capitalize()} {record_id} not found in project {project_id}")
    return await derive_sketch(db, client, store, record)


async def _derive_in_new_session(
    client: GenerationClient,
    store: BlobStore,
    kind: ComparisonTargetKind,
    record_id: int,
    session_maker: async_sessionmaker,
) -> None:
    async with session_maker() as db:
        record = await _load(db, kind, record_id)
        await derive_sketch(db, client, store, record)


def schedule_sketch(
    client: GenerationClient,
    store: BlobStore,
    kind: ComparisonTargetKind,
    record_id: int,
    *,
    session_maker: async_sessionmaker = async_session_maker,
):
    return spawn(
        _derive_in_new_session(client, store, kind, record_id, session_maker),
        name=f"sketch:{kind.value}:{record_id}",
    )


__all__ = ["derive_sketch", "retry_sketch", "schedule_sketch", "sketch_path"]
