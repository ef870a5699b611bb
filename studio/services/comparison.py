"""Keep-or-revert step between a regenerated image and the committed one."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..artifacts import Pending, Ready, ready_url
from ..database import commit
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Character, ComparisonDraft, ComparisonTargetKind, Page, Project, ReviewTarget
from .feedback import find_record
from .storage import BlobStore, ProjectBucketsStrategy, remove_url
from .workflow import load_project, mark_regenerated, target_of

logger = logging.getLogger(__name__)

PATHS = ProjectBucketsStrategy()

Record = Union[Page, Character]


class Decision(str, enum.Enum):
    keep_new = "keep_new"
    revert_old = "revert_old"


@dataclass(slots=True)
class StageOutcome:
    record: Record
    url: str
    draft: Optional[ComparisonDraft] = None

    @property
    def committed(self) -> bool:
        return self.draft is None


@dataclass(slots=True)
class DecisionOutcome:
    record: Record
    decision: Decision

    @property
    def needs_sketch(self) -> bool:
        return self.decision is Decision.keep_new


def commit_colored(record: Record, url: str) -> None:
    """Make ``url`` the committed colored image; the old sketch no longer matches it."""
    previous = ready_url(record.colored)
    record.colored = Ready(url)
    record.sketch = Pending()
    if isinstance(record, Page) and record.original_illustration_url is None:
        record.original_illustration_url = previous or url


def still_referenced(record: Record, url: Optional[str]) -> bool:
    """True while ``url`` backs the record's first illustration or what the customer was sent."""
    if not url:
        return False
    if isinstance(record, Page):
        return url in (record.original_illustration_url, record.customer_illustration_url)
    return url == record.customer_image_url


async def pending_draft(db: AsyncSession, record: Record) -> Optional[ComparisonDraft]:
    return (
        await db.execute(
            select(ComparisonDraft).where(
                ComparisonDraft.target_kind == record.kind,
                ComparisonDraft.target_id == record.id,
            )
        )
    ).scalars().first()


async def stage_artifact(db: AsyncSession, project: Project, record: Record, new_url: str) -> StageOutcome:
    """Commit straight away when nothing is committed yet, otherwise hold a comparison.

    Does not commit the session.
    """
    existing = await pending_draft(db, record)
    if existing is not None:
        raise ConflictError(f"{record.label} already has a comparison waiting for a decision")
    current = ready_url(record.colored)
    if not current:
        commit_colored(record, new_url)
        return StageOutcome(record, new_url)
    draft = ComparisonDraft(
        project_id=project.id,
        target_kind=record.kind,
        target_id=record.id,
        old_url=current,
        new_url=new_url,
    )
    db.add(draft)
    return StageOutcome(record, new_url, draft)


async def decide(
    db: AsyncSession,
    store: BlobStore,
    project_id: int,
    draft_id: int,
    decision: Decision,
) -> DecisionOutcome:
    project = await load_project(db, project_id)
    draft = await db.get(ComparisonDraft, draft_id)
    if draft is None or draft.project_id != project.id:
        raise NotFoundError(f"Comparison {draft_id} not found")
    record = find_record(project, draft.target_kind.value, draft.target_id)

    if decision is Decision.keep_new:
        if ready_url(record.colored) != draft.old_url:
            raise ConflictError(f"{record.label} changed since the comparison was opened")
        commit_colored(record, draft.new_url)
        mark_regenerated(project, target_of(record))
        discard = draft.old_url
    elif decision is Decision.revert_old:
        discard = draft.new_url
    else:
        raise ValidationError(f"Unknown decision {decision!r}")

    await db.delete(draft)
    await commit(db)
    # blobs go only once the decision is durable
    if not still_referenced(record, discard):
        await remove_url(store, discard)
    logger.info("comparison %s on %s: %s", draft_id, record.label, decision.value)
    return DecisionOutcome(record, decision)


async def upload_artifact(
    db: AsyncSession,
    store: BlobStore,
    project_id: int,
    kind: ComparisonTargetKind,
    record_id: int,
    data: bytes,
    content_type: str,
) -> StageOutcome:
    """Operator-supplied colored image; goes through the same keep-or-revert step as a regeneration."""
    if not (content_type or "").startswith("image/"):
        raise ValidationError("Uploads must be images")
    if not data:
        raise ValidationError("The uploaded file is empty")
    project = await load_project(db, project_id)
    record = find_record(project, kind.value, record_id)
    if await pending_draft(db, record) is not None:
        raise ConflictError(f"{record.label} already has a comparison waiting for a decision")
    ext = (content_type.split("/", 1)[1] or "png").split("+", 1)[0]
    if isinstance(record, Page):
        path = PATHS.page_path(project.id, record.page_number, "illustration", ext)
    else:
        path = PATHS.character_path(project.id, record.id, "image", ext)
    url = await store.put(path, data, content_type)
    outcome = await stage_artifact(db, project, record, url)
    if outcome.committed:
        mark_regenerated(project, target_of(record))
    await commit(db)
    return outcome


@dataclass(slots=True)
class RestoreOutcome:
    page: Page
    restored: bool

    @property
    def needs_sketch(self) -> bool:
        return self.restored


async def reset_to_original(db: AsyncSession, store: BlobStore, project_id: int, page_id: int) -> RestoreOutcome:
    """Put the page's first committed illustration back, without a provider call."""
    project = await load_project(db, project_id)
    page = find_record(project, "page", page_id)
    original = page.original_illustration_url
    if not original:
        raise ValidationError(f"{page.label} has no original illustration")
    current = ready_url(page.illustration)
    if current == original:
        return RestoreOutcome(page, restored=False)
    if await pending_draft(db, page) is not None:
        raise ConflictError(f"{page.label} already has a comparison waiting for a decision")

    page.illustration = Ready(original)
    page.sketch = Pending()
    mark_regenerated(project, ReviewTarget.illustrations)
    await commit(db)
    if not still_referenced(page, current):
        await remove_url(store, current)
    logger.info("project %s %s: restored original illustration", project.id, page.label)
    return RestoreOutcome(page, restored=True)


__all__ = [
    "Decision",
    "StageOutcome",
    "DecisionOutcome",
    "commit_colored",
    "RestoreOutcome",
    "still_referenced",
    "pending_draft",
    "stage_artifact",
    "decide",
    "upload_artifact",
    "reset_to_original",
]
