"""Notification intents and their e-mail delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from fastapi.templating import Jinja2Templates

from ..background import run_sync, spawn
from ..settings.config import settings
from .mailer import send_email
from .staging import NotificationKind

logger = logging.getLogger(__name__)
templates = Jinja2Templates(directory=settings.TEMPLATES_DIR)


@dataclass(frozen=True, slots=True)
class NotificationIntent:
    kind: NotificationKind
    recipient: str
    variables: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, intent: NotificationIntent) -> None: ...


_SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.initial: "Meet the characters of {book_title}",
    NotificationKind.first_batch_ready: "Your characters for {book_title} are ready",
    NotificationKind.revision_round: "Revision round {round_number}: updated characters for {book_title}",
    NotificationKind.illustrations_initial: "The illustrations for {book_title} are underway",
    NotificationKind.illustrations_first_batch_ready: "Your illustrations for {book_title} are ready",
    NotificationKind.illustrations_revision_round: "Revision round {round_number}: updated illustrations for {book_title}",
    NotificationKind.customer_review_submitted: "{author_name} submitted their review of {book_title}",
    NotificationKind.characters_approved: "{author_name} approved the characters of {book_title}",
    NotificationKind.illustrations_approved: "{author_name} approved the illustrations of {book_title}",
}


def _trim(value: str, *, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"


def subject_for(intent: NotificationIntent) -> str:
    ctx = {"book_title": "your book", "author_name": "The customer", "round_number": "", **intent.variables}
    return _trim(_SUBJECTS[intent.kind].format(**ctx), limit=140)


class EmailNotifier:
    """Renders ``email/<kind>.html`` / ``.txt`` and hands them to the SMTP helper."""

    def __init__(self, templates: Jinja2Templates = templates):
        self.templates = templates

    def render(self, intent: NotificationIntent) -> tuple[str, str]:
        ctx = dict(intent.variables)
        html_body = self.templates.get_template(f"email/{intent.kind.value}.html").render(ctx)
        text_body = self.templates.get_template(f"email/{intent.kind.value}.txt").render(ctx)
        return html_body, text_body

    async def send(self, intent: NotificationIntent) -> None:
        html_body, text_body = self.render(intent)
        ok = await run_sync(
            send_email,
            intent.recipient,
            subject=subject_for(intent),
            text_body=text_body,
            html_body=html_body,
        )
        if not ok:
            logger.warning("notification %s to %s was not delivered", intent.kind.value, intent.recipient)


async def _deliver(notifier: Notifier, intent: NotificationIntent) -> None:
    try:
        await notifier.send(intent)
    except Exception:  # noqa: BLE001
        logger.exception("failed to send %s notification to %s", intent.kind.value, intent.recipient)


def dispatch(notifier: Notifier, intents: Iterable[NotificationIntent]) -> None:
    """Fire and forget; a failed delivery is logged and never reaches the caller."""
    for intent in intents:
        if not intent.recipient:
            logger.debug("skipping %s notification without recipient", intent.kind.value)
            continue
        spawn(_deliver(notifier, intent), name=f"notify:{intent.kind.value}")


__all__ = ["NotificationIntent", "Notifier", "EmailNotifier", "dispatch", "subject_for"]
