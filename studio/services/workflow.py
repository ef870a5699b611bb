"""Project status state machine.

Every move goes through ``transition`` and the fixed ``TRANSITIONS`` table.
Operations load what they need, mutate, commit once and only then hand their
notification intents to the notifier. A failed commit rolls the whole
operation back and surfaces ``PersistenceError``; the stored status is
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..artifacts import is_ready, ready_url
from ..database import commit
from ..errors import ConflictError, NotFoundError, TransitionError, ValidationError
from ..jobs import JOBS
from ..models import (
    Character, ComparisonDraft, ComparisonTargetKind, Page, Project, ProjectStatus, ReviewTarget, RevisionRound,
)
from ..settings.config import settings
from . import revisions
from .notifications import NotificationIntent, Notifier, dispatch
from .staging import NotificationKind, SendPlan, plan_send
from .tokens import new_review_token

logger = logging.getLogger(__name__)

S = ProjectStatus

TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    S.draft: frozenset({S.character_generation, S.character_review}),
    S.character_generation: frozenset({S.character_generation_complete}),
    S.character_generation_complete: frozenset({S.character_review, S.character_generation}),
    S.character_review: frozenset({
        S.character_revision_needed, S.characters_approved, S.characters_regenerated, S.character_generation,
    }),
    S.character_revision_needed: frozenset({S.characters_regenerated, S.character_review, S.characters_approved}),
    S.characters_regenerated: frozenset({S.character_review, S.characters_regenerated}),
    S.characters_approved: frozenset({S.illustration_review, S.illustration_revision_needed}),
    S.illustration_review: frozenset({S.illustration_revision_needed, S.completed}),
    S.illustration_revision_needed: frozenset({S.illustration_review, S.completed}),
    S.completed: frozenset(),
}


@dataclass(frozen=True, slots=True)
class TargetFlow:
    target: ReviewTarget
    review_status: ProjectStatus
    revision_status: ProjectStatus
    counter_attr: str
    source_statuses: frozenset[ProjectStatus]

    @property
    def illustrations(self) -> bool:
        return self.target is ReviewTarget.illustrations


TARGETS: dict[ReviewTarget, TargetFlow] = {
    ReviewTarget.characters: TargetFlow(
        target=ReviewTarget.characters,
        review_status=S.character_review,
        revision_status=S.character_revision_needed,
        counter_attr="character_send_count",
        source_statuses=frozenset({
            S.draft, S.character_generation_complete, S.character_review,
            S.character_revision_needed, S.characters_regenerated,
        }),
    ),
    ReviewTarget.illustrations: TargetFlow(
        target=ReviewTarget.illustrations,
        review_status=S.illustration_review,
        revision_status=S.illustration_revision_needed,
        counter_attr="illustration_send_count",
        source_statuses=frozenset({S.characters_approved, S.illustration_review, S.illustration_revision_needed}),
    ),
}

REVIEW_STATUSES = frozenset(flow.review_status for flow in TARGETS.values())


def review_target_for(status: ProjectStatus) -> ReviewTarget:
    for flow in TARGETS.values():
        if status in flow.source_statuses:
            return flow.target
    raise TransitionError(f"A project in '{status.value}' cannot be sent to the customer")


def target_of(record) -> ReviewTarget:
    return ReviewTarget.illustrations if isinstance(record, Page) else ReviewTarget.characters


def can_transition(current: ProjectStatus, new: ProjectStatus) -> bool:
    if new in TRANSITIONS.get(current, frozenset()):
        return True
    # resend without intervening change
    return current == new and current in REVIEW_STATUSES


def transition(project: Project, new: ProjectStatus) -> None:
    current = ProjectStatus(project.status)
    if not can_transition(current, new):
        raise TransitionError(f"Cannot move project {project.id} from '{current.value}' to '{new.value}'")
    if current != new:
        logger.info("project %s: %s -> %s", project.id, current.value, new.value)
    project.status = new


def page_state(page: Page) -> str:
    """Per-page view of the lifecycle, derived from its artifacts and ledger."""
    if (page.feedback_notes or "").strip():
        return "revision_requested"
    if is_ready(page.illustration):
        return "illustrated"
    if page.illustration is not None and page.illustration.state == "failed":
        return "generation_failed"
    return "not_illustrated"


# ---------------------------
# loading helpers
# ---------------------------
async def load_project(db: AsyncSession, project_id: int) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise NotFoundError(f"Project {project_id} not found")
    return project


async def load_project_by_token(db: AsyncSession, token: str) -> Project:
    if not (token or "").strip():
        raise ValidationError("Review token is required")
    project = (await db.execute(select(Project).where(Project.review_token == token))).scalars().first()
    if not project:
        raise NotFoundError("This review link is no longer valid")
    return project


async def current_round(db: AsyncSession, project: Project, target: ReviewTarget) -> RevisionRound:
    """Latest round of ``target``; ``project.rounds`` is the source of truth within a unit of work."""
    rows = [r for r in project.rounds if r.target == target]
    if rows:
        return max(rows, key=lambda r: r.number)
    # projects created outside create_project still get a round 0
    row = RevisionRound(target=target, number=0)
    project.rounds.append(row)
    await db.flush()
    return row


def records_for(project: Project, target: ReviewTarget) -> list:
    return list(project.pages if target is ReviewTarget.illustrations else project.characters)


def has_imagery(record) -> bool:
    return is_ready(record.illustration if isinstance(record, Page) else record.image)


def counts_as_batch(record) -> bool:
    """Imagery that makes a send a "batch"; the main character is drawn before any send."""
    if isinstance(record, Character) and record.is_main:
        return False
    return has_imagery(record)


def review_url(project: Project) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/review/{project.review_token}"


def _base_variables(project: Project) -> dict:
    return {
        "author_name": project.author_name,
        "book_title": project.book_title or "your book",
        "project_id": project.id,
    }


def _admin_intent(kind: NotificationKind, project: Project) -> list[NotificationIntent]:
    if not settings.ADMIN_NOTIFY_EMAIL:
        return []
    variables = {**_base_variables(project), "admin_url": f"{settings.BASE_URL.rstrip('/')}/admin/projects/{project.id}"}
    return [NotificationIntent(kind, settings.ADMIN_NOTIFY_EMAIL, variables)]


async def _finish(db: AsyncSession, notifier: Optional[Notifier], intents: Iterable[NotificationIntent]) -> None:
    await commit(db)
    if notifier is not None:
        dispatch(notifier, intents)


# ---------------------------
# project intake
# ---------------------------
async def create_project(
    db: AsyncSession,
    *,
    book_title: Optional[str] = None,
    author_firstname: Optional[str] = None,
    author_lastname: Optional[str] = None,
    author_email: Optional[str] = None,
    author_phone: Optional[str] = None,
    illustration_aspect_ratio: Optional[str] = None,
    pages: Iterable[dict] = (),
    characters: Iterable[dict] = (),
) -> Project:
    characters = list(characters)
    if sum(1 for c in characters if c.get("is_main")) > 1:
        raise ValidationError("A project can have only one main character")

    project = Project(
        book_title=book_title,
        author_firstname=author_firstname,
        author_lastname=author_lastname,
        author_email=author_email,
        author_phone=author_phone,
        illustration_aspect_ratio=illustration_aspect_ratio,
        status=S.draft,
        character_send_count=0,
        illustration_send_count=0,
    )
    by_name: dict[str, Character] = {}
    for c in characters:
        character = Character(
            name=c.get("name"),
            role=c.get("role"),
            description=c.get("description"),
            is_main=bool(c.get("is_main")),
            feedback_history=[],
            pages=[],
            version=0,
        )
        project.characters.append(character)
        if character.name:
            by_name[character.name] = character

    seen_numbers: set[int] = set()
    for i, p in enumerate(pages, start=1):
        number = int(p.get("page_number") or i)
        if number < 1 or number in seen_numbers:
            raise ValidationError(f"Invalid or duplicate page number {number}")
        seen_numbers.add(number)
        cast = []
        for name in p.get("characters") or ():
            if name not in by_name:
                raise ValidationError(f"Page {number} features unknown character {name!r}")
            cast.append(by_name[name])
        project.pages.append(Page(
            page_number=number,
            story_text=p.get("story_text"),
            scene_description=p.get("scene_description"),
            feedback_history=[],
            conversation_thread=[],
            characters=cast,
            version=0,
        ))
    for target in ReviewTarget:
        project.rounds.append(RevisionRound(target=target, number=0))
    db.add(project)
    await commit(db)
    logger.info("created project %s with %d pages / %d characters", project.id, len(project.pages), len(characters))
    return project


# ---------------------------
# character generation gate
# ---------------------------
def ensure_can_generate_characters(project: Project) -> Character:
    main = project.main_character
    if main is None:
        raise TransitionError("The project has no main character")
    if not is_ready(main.image):
        raise TransitionError("Generate the main character before the others")
    return main


def enter_character_generation(project: Project) -> None:
    ensure_can_generate_characters(project)
    transition(project, S.character_generation)


async def start_character_generation(db: AsyncSession, project_id: int) -> Project:
    project = await load_project(db, project_id)
    enter_character_generation(project)
    await commit(db)
    return project


def advance_after_batch(project: Project, *, generated: int, failed: int) -> bool:
    """Advance only when every item of a non-empty batch succeeded."""
    if failed or not generated:
        return False
    current = ProjectStatus(project.status)
    new = S.character_generation_complete if current == S.character_generation else S.characters_regenerated
    if not can_transition(current, new):
        return False
    transition(project, new)
    return True


def mark_regenerated(project: Project, target: ReviewTarget) -> bool:
    """Record an operator regeneration made during the revision phase."""
    current = ProjectStatus(project.status)
    if target is ReviewTarget.characters:
        if current in (S.character_review, S.character_revision_needed, S.characters_regenerated):
            transition(project, S.characters_regenerated)
            return True
        return False
    if (project.illustration_send_count or 0) > 0 and current in (S.characters_approved, S.illustration_review):
        transition(project, S.illustration_revision_needed)
        return True
    return False


# ---------------------------
# send to customer
# ---------------------------
@dataclass(slots=True)
class SendResult:
    project: Project
    target: ReviewTarget
    plan: SendPlan
    resolved: int
    intents: list[NotificationIntent] = field(default_factory=list)


def _sync_customer_copy(record) -> None:
    if isinstance(record, Page):
        record.customer_illustration_url = ready_url(record.illustration)
        record.customer_sketch_url = ready_url(record.sketch)
    else:
        record.customer_image_url = ready_url(record.image)
        record.customer_sketch_url = ready_url(record.sketch)


async def send_to_customer(
    db: AsyncSession,
    project_id: int,
    *,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> SendResult:
    project = await load_project(db, project_id)
    status = ProjectStatus(project.status)
    if status == S.character_generation or JOBS.active_for(project.id) is not None:
        raise ConflictError("Character generation is running; send again once it finishes")
    target = review_target_for(status)
    flow = TARGETS[target]
    if not (project.author_email or "").strip():
        raise ValidationError("The project has no customer e-mail address")
    if not can_transition(status, flow.review_status):
        raise TransitionError(f"Cannot send from '{status.value}'")

    at = now or datetime.now(timezone.utc)
    records = records_for(project, target)
    round_ = await current_round(db, project, target)
    imagery = [r for r in records if has_imagery(r)]

    resolved = 0
    for record in imagery:
        if revisions.resolve_open(record, round_, expected_version=record.version or 0, now=at) is not None:
            resolved += 1
        _sync_customer_copy(record)

    if target is ReviewTarget.illustrations:
        for page in records:
            if page.original_story_text is None:
                page.original_story_text = page.story_text
            if page.original_scene_description is None:
                page.original_scene_description = page.scene_description

    previous = getattr(project, flow.counter_attr) or 0
    plan = plan_send(previous, any(counts_as_batch(r) for r in records), illustrations=flow.illustrations)
    setattr(project, flow.counter_attr, plan.new_count)
    if plan.new_count != previous:
        project.rounds.append(RevisionRound(target=target, number=plan.new_count, opened_at=at))

    if not project.review_token:
        project.review_token = new_review_token()
    transition(project, flow.review_status)

    variables = {**_base_variables(project), "review_url": review_url(project)}
    if plan.round_number is not None:
        variables["round_number"] = plan.round_number
    intents = [NotificationIntent(plan.kind, project.author_email, variables)]

    await _finish(db, notifier, intents)
    logger.info(
        "project %s sent to customer (%s, count %d -> %d, %d notes resolved)",
        project.id, plan.kind.value, previous, plan.new_count, resolved,
    )
    return SendResult(project, target, plan, resolved, intents)


# ---------------------------
# customer decisions
# ---------------------------
@dataclass(slots=True)
class ReviewOutcome:
    project: Project
    status: ProjectStatus
    start_generation: bool = False
    intents: list[NotificationIntent] = field(default_factory=list)


async def submit_character_review(db: AsyncSession, token: str, *, notifier: Optional[Notifier] = None) -> ReviewOutcome:
    project = await load_project_by_token(db, token)
    if ProjectStatus(project.status) != S.character_review:
        raise TransitionError("The characters are not open for review")

    pending = [c for c in project.characters if not c.is_main and not is_ready(c.image)]
    start_generation = False
    if pending:
        enter_character_generation(project)
        start_generation = True
    elif any((c.feedback_notes or "").strip() for c in project.characters):
        transition(project, S.character_revision_needed)
    else:
        transition(project, S.characters_approved)

    intents = _admin_intent(NotificationKind.customer_review_submitted, project)
    await _finish(db, notifier, intents)
    return ReviewOutcome(project, ProjectStatus(project.status), start_generation, intents)


async def approve_characters(db: AsyncSession, token: str, *, notifier: Optional[Notifier] = None) -> ReviewOutcome:
    project = await load_project_by_token(db, token)
    if ProjectStatus(project.status) == S.characters_approved:
        return ReviewOutcome(project, S.characters_approved)
    transition(project, S.characters_approved)
    intents = _admin_intent(NotificationKind.characters_approved, project)
    await _finish(db, notifier, intents)
    return ReviewOutcome(project, S.characters_approved, intents=intents)


async def approve_illustrations(db: AsyncSession, token: str, *, notifier: Optional[Notifier] = None) -> ReviewOutcome:
    project = await load_project_by_token(db, token)
    if ProjectStatus(project.status) == S.completed:
        return ReviewOutcome(project, S.completed)
    transition(project, S.completed)
    intents = _admin_intent(NotificationKind.illustrations_approved, project)
    await _finish(db, notifier, intents)
    return ReviewOutcome(project, S.completed, intents=intents)


async def manual_approve_illustrations(db: AsyncSession, project_id: int) -> Project:
    project = await load_project(db, project_id)
    if ProjectStatus(project.status) == S.completed:
        return project
    round_ = await current_round(db, project, ReviewTarget.illustrations)
    transition(project, S.completed)
    for page in project.pages:
        revisions.resolve_open(page, round_, expected_version=page.version or 0)
    await commit(db)
    return project


# ---------------------------
# resets
# ---------------------------
async def reset_review_token(db: AsyncSession, project_id: int) -> Project:
    project = await load_project(db, project_id)
    project.review_token = new_review_token()
    await commit(db)
    logger.info("project %s: review token rotated", project.id)
    return project


RESETTABLE = frozenset({S.characters_approved, S.illustration_review, S.illustration_revision_needed, S.completed})


async def reset_illustrations(db: AsyncSession, project_id: int) -> Project:
    """Operator override: start the illustration phase over."""
    project = await load_project(db, project_id)
    if ProjectStatus(project.status) not in RESETTABLE:
        raise TransitionError("Illustrations can only be reset once the characters are approved")

    for page in project.pages:
        page.illustration = None
        page.sketch = None
        page.customer_illustration_url = None
        page.customer_sketch_url = None
        page.original_illustration_url = None
        page.feedback_notes = None
        page.feedback_history = []
        page.is_resolved = False
        page.conversation_thread = []
        page.admin_reply = None
        page.admin_reply_type = None
        page.admin_reply_at = None
        page.version = (page.version or 0) + 1

    page_ids = [p.id for p in project.pages]
    if page_ids:
        await db.execute(
            delete(ComparisonDraft).where(
                ComparisonDraft.target_kind == ComparisonTargetKind.page,
                ComparisonDraft.target_id.in_(page_ids),
            )
        )
    for row in [r for r in project.rounds if r.target == ReviewTarget.illustrations]:
        project.rounds.remove(row)
    await db.flush()
    project.rounds.append(RevisionRound(target=ReviewTarget.illustrations, number=0))

    project.illustration_send_count = 0
    project.status = S.characters_approved
    project.review_token = new_review_token()
    await commit(db)
    logger.info("project %s: illustrations reset", project.id)
    return project


__all__ = [
    "TRANSITIONS",
    "TARGETS",
    "TargetFlow",
    "SendResult",
    "ReviewOutcome",
    "review_target_for",
    "target_of",
    "can_transition",
    "transition",
    "page_state",
    "load_project",
    "load_project_by_token",
    "current_round",
    "create_project",
    "ensure_can_generate_characters",
    "enter_character_generation",
    "start_character_generation",
    "advance_after_batch",
    "mark_regenerated",
    "counts_as_batch",
    "send_to_customer",
    "submit_character_review",
    "approve_characters",
    "approve_illustrations",
    "manual_approve_illustrations",
    "reset_review_token",
    "reset_illustrations",
]
