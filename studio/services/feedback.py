"""Session-bound wrappers around the revision ledger for the two HTTP surfaces."""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from ..database import commit
from ..errors import NotFoundError, TransitionError, ValidationError
from ..models import Character, Page, Project, ProjectStatus
from . import revisions
from .workflow import TARGETS, current_round, load_project, load_project_by_token, target_of

logger = logging.getLogger(__name__)

RecordKind = Literal["page", "character"]
Record = Union[Page, Character]


def find_record(project: Project, kind: RecordKind, record_id: int) -> Record:
    if kind == "page":
        pool = project.pages
    elif kind == "character":
        pool = project.characters
    else:
        raise ValidationError(f"Unknown record kind {kind!r}")
    for record in pool:
        if record.id == record_id:
            return record
    raise NotFoundError(f"{kind.capitalize()} {record_id} not found in project {project.id}")


def _ensure_open_for_review(project: Project, record: Record) -> None:
    flow = TARGETS[target_of(record)]
    status = ProjectStatus(project.status)
    if status not in (flow.review_status, flow.revision_status):
        raise TransitionError(f"The {flow.target.value} are not open for customer review")


async def _apply(db: AsyncSession, project: Project, record: Record, op: Callable[..., Any], *args: Any,
                 with_round: bool = False, **kwargs: Any) -> Record:
    if with_round:
        round_ = await current_round(db, project, target_of(record))
        op(record, round_, *args, **kwargs)
    else:
        op(record, *args, **kwargs)
    await commit(db)
    logger.debug("%s on %s -> version %s", op.__name__, record.label, record.version)
    return record


# ---------------------------
# customer (review token)
# ---------------------------
async def customer_action(
    db: AsyncSession,
    token: str,
    kind: RecordKind,
    record_id: int,
    action: str,
    *,
    expected_version: int,
    text: Optional[str] = None,
) -> Record:
    project = await load_project_by_token(db, token)
    record = find_record(project, kind, record_id)
    _ensure_open_for_review(project, record)

    if action == "submit":
        return await _apply(db, project, record, revisions.submit_feedback, text, expected_version=expected_version)
    if action == "edit":
        return await _apply(db, project, record, revisions.edit_feedback, text, expected_version=expected_version)
    if action == "accept":
        return await _apply(db, project, record, revisions.accept_reply, expected_version=expected_version, with_round=True)
    if action == "follow_up":
        return await _apply(db, project, record, revisions.follow_up, text, expected_version=expected_version)
    if action == "edit_last":
        return await _apply(db, project, record, revisions.edit_last_thread_entry, revisions.CUSTOMER, text,
                            expected_version=expected_version)
    raise ValidationError(f"Unknown customer action {action!r}")


# ---------------------------
# admin (project id)
# ---------------------------
async def admin_action(
    db: AsyncSession,
    project_id: int,
    kind: RecordKind,
    record_id: int,
    action: str,
    *,
    expected_version: int,
    text: Optional[str] = None,
) -> Record:
    project = await load_project(db, project_id)
    record = find_record(project, kind, record_id)

    if action == "reply":
        return await _apply(db, project, record, revisions.reply, text, expected_version=expected_version)
    if action == "resolve":
        return await _apply(db, project, record, revisions.manual_resolve, expected_version=expected_version, with_round=True)
    if action == "comment":
        return await _apply(db, project, record, revisions.set_comment, text, expected_version=expected_version)
    if action == "remove_comment":
        return await _apply(db, project, record, revisions.remove_comment, expected_version=expected_version)
    if action == "edit_last":
        return await _apply(db, project, record, revisions.edit_last_thread_entry, revisions.ADMIN, text,
                            expected_version=expected_version)
    raise ValidationError(f"Unknown admin action {action!r}")


def history_for(project: Project, record: Record) -> revisions.HistoryView:
    flow = TARGETS[target_of(record)]
    return revisions.history_view(record, getattr(project, flow.counter_attr) or 0)


__all__ = ["find_record", "customer_action", "admin_action", "history_for", "RecordKind", "Record"]
