"""Revision ledger: customer feedback, admin replies and round-stamped history.

Every function here works on a *revision record* (a ``Page`` or a
``Character``) in memory and never touches the session; the caller commits.
Each mutation takes the ``version`` the caller last saw, refuses to act on a
record that moved on since, and bumps ``version`` when it succeeds.

Only pages carry a conversation thread. Thread operations on a character raise
``ValidationError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from ..errors import ConflictError, ValidationError
from ..models import AdminReplyType


ADMIN = "admin"
CUSTOMER = "customer"


class RoundRef(Protocol):
    id: Optional[int]
    number: int


@dataclass(frozen=True, slots=True)
class Round:
    """Detached round reference; ``RevisionRound`` rows satisfy the same shape."""

    number: int
    id: Optional[int] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(at: datetime) -> str:
    return at.isoformat()


def _check_version(record: Any, expected_version: int) -> None:
    current = record.version or 0
    if expected_version != current:
        raise ConflictError(
            f"{record.label} changed since it was loaded (version {expected_version}, now {current})"
        )


def _bump(record: Any) -> None:
    record.version = (record.version or 0) + 1


def _require_threading(record: Any) -> None:
    if not getattr(record, "supports_threading", False):
        raise ValidationError(f"{record.label} does not support conversation threads")


def _require_open(record: Any) -> None:
    if not (record.feedback_notes or "").strip():
        raise ValidationError(f"{record.label} has no open feedback")


def _clean(text: Optional[str], what: str) -> str:
    value = (text or "").strip()
    if not value:
        raise ValidationError(f"{what} cannot be empty")
    return value


def _standing_reply(record: Any) -> Optional[str]:
    if record.admin_reply and record.admin_reply_type == AdminReplyType.reply:
        return record.admin_reply
    return None


def _thread(record: Any) -> list[dict[str, Any]]:
    if not getattr(record, "supports_threading", False):
        return []
    return list(record.conversation_thread or [])


def _clear_reply(record: Any) -> None:
    record.admin_reply = None
    record.admin_reply_type = None
    record.admin_reply_at = None


def _archive_open_note(record: Any, round_: RoundRef, at: datetime, thread: list[dict[str, Any]]) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "note": record.feedback_notes,
        "created_at": _stamp(at),
        "revision_round": round_.number,
        "round_id": round_.id,
    }
    if thread:
        entry["conversation_thread"] = thread
    record.feedback_history = [*(record.feedback_history or []), entry]
    record.feedback_notes = None
    record.is_resolved = True
    if getattr(record, "supports_threading", False):
        record.conversation_thread = []
    return entry


# ---------------------------
# customer side
# ---------------------------
def submit_feedback(record: Any, note: str, *, expected_version: int, now: Optional[datetime] = None) -> None:
    """Open a new request on a record that has none.

    If the record was resolved with an admin comment, the comment is archived
    onto the most recent history entry before the new note opens.
    """
    _check_version(record, expected_version)
    text = _clean(note, "Feedback")
    if (record.feedback_notes or "").strip():
        raise ConflictError(f"{record.label} already has an open request")

    if record.admin_reply and record.admin_reply_type == AdminReplyType.comment:
        history = list(record.feedback_history or [])
        if history:
            history[-1] = {**history[-1], "admin_comment": record.admin_reply}
            record.feedback_history = history
        _clear_reply(record)

    record.feedback_notes = text
    record.is_resolved = False
    if getattr(record, "supports_threading", False):
        record.conversation_thread = []
    _bump(record)


def edit_feedback(record: Any, note: str, *, expected_version: int) -> None:
    _check_version(record, expected_version)
    _require_open(record)
    text = _clean(note, "Feedback")
    if _standing_reply(record) or _thread(record):
        raise ConflictError(f"The studio already answered the request on {record.label}")
    record.feedback_notes = text
    _bump(record)


def accept_reply(record: Any, round_: RoundRef, *, expected_version: int, now: Optional[datetime] = None) -> dict[str, Any]:
    """Customer accepts the standing reply; the exchange is archived and the record resolved."""
    _require_threading(record)
    _check_version(record, expected_version)
    _require_open(record)
    reply_text = _standing_reply(record)
    if not reply_text:
        raise ValidationError(f"There is no reply to accept on {record.label}")
    at = now or _now()
    thread = _thread(record)
    thread.append({"type": ADMIN, "text": reply_text, "at": _stamp(record.admin_reply_at or at)})
    _clear_reply(record)
    entry = _archive_open_note(record, round_, at, thread)
    _bump(record)
    return entry


def follow_up(record: Any, text: str, *, expected_version: int, now: Optional[datetime] = None) -> None:
    """Customer answers the standing reply; the studio has to respond again."""
    _require_threading(record)
    _check_version(record, expected_version)
    _require_open(record)
    message = _clean(text, "Follow-up")
    reply_text = _standing_reply(record)
    if not reply_text:
        raise ValidationError(f"There is no reply to answer on {record.label}")
    at = now or _now()
    thread = _thread(record)
    thread.append({"type": ADMIN, "text": reply_text, "at": _stamp(record.admin_reply_at or at)})
    thread.append({"type": CUSTOMER, "text": message, "at": _stamp(at)})
    record.conversation_thread = thread
    _clear_reply(record)
    record.is_resolved = False
    _bump(record)


def edit_last_thread_entry(record: Any, author: str, text: str, *, expected_version: int) -> None:
    """Rewrite the newest thread entry, only by its author and only before the other side acted on it."""
    _require_threading(record)
    _check_version(record, expected_version)
    _require_open(record)
    if author not in (ADMIN, CUSTOMER):
        raise ValidationError(f"Unknown thread author {author!r}")
    message = _clean(text, "Message")
    thread = _thread(record)
    if not thread:
        raise ValidationError(f"{record.label} has no conversation yet")
    last = thread[-1]
    if last.get("type") != author:
        raise ConflictError("Only the author of the last message can edit it")
    if author == CUSTOMER and _standing_reply(record):
        raise ConflictError("The studio already replied to this message")
    thread[-1] = {**last, "text": message}
    record.conversation_thread = thread
    _bump(record)


# ---------------------------
# admin side
# ---------------------------
def reply(record: Any, text: str, *, expected_version: int, now: Optional[datetime] = None) -> None:
    """Answer the open request; the note stays open until the customer accepts or follows up."""
    _require_threading(record)
    _check_version(record, expected_version)
    _require_open(record)
    record.admin_reply = _clean(text, "Reply")
    record.admin_reply_type = AdminReplyType.reply
    record.admin_reply_at = now or _now()
    _bump(record)


def manual_resolve(record: Any, round_: RoundRef, *, expected_version: int, now: Optional[datetime] = None) -> dict[str, Any]:
    """Resolve without content change. A standing reply is kept as the admin comment."""
    _check_version(record, expected_version)
    if not (record.feedback_notes or "").strip():
        raise ValidationError("No feedback to resolve")
    entry = _resolve(record, round_, now or _now())
    _bump(record)
    return entry


def resolve_open(record: Any, round_: RoundRef, *, expected_version: int, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    """Resolve the open note if there is one. Returns the archived entry or None."""
    _check_version(record, expected_version)
    if not (record.feedback_notes or "").strip():
        return None
    entry = _resolve(record, round_, now or _now())
    _bump(record)
    return entry


def _resolve(record: Any, round_: RoundRef, at: datetime) -> Optional[dict[str, Any]]:
    entry = None
    if (record.feedback_notes or "").strip():
        entry = _archive_open_note(record, round_, at, _thread(record))
    else:
        record.feedback_notes = None
        record.is_resolved = True
    if _standing_reply(record):
        record.admin_reply_type = AdminReplyType.comment
    return entry


def set_comment(record: Any, text: str, *, expected_version: int, now: Optional[datetime] = None) -> None:
    _check_version(record, expected_version)
    if (record.feedback_notes or "").strip() or not record.is_resolved:
        raise ValidationError(f"Comments can only be attached to a resolved {record.label}")
    record.admin_reply = _clean(text, "Comment")
    record.admin_reply_type = AdminReplyType.comment
    record.admin_reply_at = now or _now()
    _bump(record)


def remove_comment(record: Any, *, expected_version: int) -> None:
    _check_version(record, expected_version)
    if record.admin_reply_type != AdminReplyType.comment:
        raise ValidationError(f"{record.label} has no comment to remove")
    _clear_reply(record)
    _bump(record)


# ---------------------------
# display
# ---------------------------
@dataclass(slots=True)
class HistoryView:
    current: list[dict[str, Any]] = field(default_factory=list)
    previous: list[dict[str, Any]] = field(default_factory=list)

    @property
    def hidden_count(self) -> int:
        return len(self.previous)

    @property
    def toggle_label(self) -> Optional[str]:
        n = self.hidden_count
        if not n:
            return None
        return f"show {n} previous revision{'s' if n != 1 else ''}"


def history_view(record: Any, current_round: int) -> HistoryView:
    """Entries of the current round inline (oldest first); older rounds collapsed (newest first)."""
    view = HistoryView()
    for entry in record.feedback_history or []:
        if entry.get("revision_round") == current_round:
            view.current.append(entry)
        else:
            view.previous.append(entry)
    view.previous.sort(key=lambda e: (e.get("revision_round") or 0, e.get("created_at") or ""), reverse=True)
    return view


__all__ = [
    "ADMIN",
    "CUSTOMER",
    "Round",
    "HistoryView",
    "submit_feedback",
    "edit_feedback",
    "accept_reply",
    "follow_up",
    "edit_last_thread_entry",
    "reply",
    "manual_resolve",
    "resolve_open",
    "set_comment",
    "remove_comment",
    "history_view",
]
