# studio/routers/review.py
"""Customer review surface, addressed by the project's review token."""
from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import get_db
from ..deps import get_blob_store, get_generation_client, get_notifier, get_session_maker
from ..errors import ValidationError
from ..models import AdminReplyType, Character, Page, Project
from ..schemas import (
    ActionIn, HistoryRead, ReviewCharacterRead, ReviewOutcomeRead, ReviewPageRead, ReviewProjectRead,
)
from ..services import characters as character_service
from ..services import feedback, workflow
from ..services.generation.client import GenerationClient
from ..services.notifications import Notifier
from ..services.storage import BlobStore

router = APIRouter(prefix="/api/review/{token}", tags=["review"])

ACTIONS = {"submit", "edit", "accept", "follow-up", "edit-last"}


def _history(project: Project, record) -> HistoryRead:
    view = feedback.history_for(project, record)
    return HistoryRead(
        current=view.current,
        previous=view.previous,
        hidden_count=view.hidden_count,
        toggle_label=view.toggle_label,
    )


def _character_view(project: Project, c: Character) -> ReviewCharacterRead:
    comment = c.admin_reply if c.admin_reply_type == AdminReplyType.comment else None
    return ReviewCharacterRead(
        id=c.id,
        name=c.name,
        role=c.role,
        is_main=bool(c.is_main),
        image_url=c.customer_image_url,
        sketch_url=c.customer_sketch_url,
        feedback_notes=c.feedback_notes,
        is_resolved=bool(c.is_resolved),
        admin_comment=comment,
        history=_history(project, c),
        version=c.version or 0,
    )


def _page_view(project: Project, p: Page) -> ReviewPageRead:
    return ReviewPageRead(
        id=p.id,
        page_number=p.page_number,
        state=workflow.page_state(p),
        story_text=p.story_text,
        illustration_url=p.customer_illustration_url,
        sketch_url=p.customer_sketch_url,
        feedback_notes=p.feedback_notes,
        is_resolved=bool(p.is_resolved),
        conversation_thread=p.conversation_thread or [],
        admin_reply=p.admin_reply,
        admin_reply_type=p.admin_reply_type,
        history=_history(project, p),
        version=p.version or 0,
    )


@router.get("", response_model=ReviewProjectRead)
async def api_review(token: str, db: AsyncSession = Depends(get_db)):
    project = await workflow.load_project_by_token(db, token)
    return ReviewProjectRead(
        book_title=project.book_title,
        author_name=project.author_name,
        status=project.status,
        characters=[_character_view(project, c) for c in project.characters],
        pages=[_page_view(project, p) for p in project.pages],
    )


@router.post("/characters/submit", response_model=ReviewOutcomeRead)
async def api_submit_characters(
    token: str,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    outcome = await workflow.submit_character_review(db, token, notifier=notifier)
    if outcome.start_generation:
        character_service.launch_generation_job(client, store, outcome.project, session_maker=session_maker)
    return ReviewOutcomeRead(status=outcome.status, generation_started=outcome.start_generation)


@router.post("/characters/approve", response_model=ReviewOutcomeRead)
async def api_approve_characters(
    token: str,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = await workflow.approve_characters(db, token, notifier=notifier)
    return ReviewOutcomeRead(status=outcome.status)


@router.post("/illustrations/approve", response_model=ReviewOutcomeRead)
async def api_approve_illustrations(
    token: str,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = await workflow.approve_illustrations(db, token, notifier=notifier)
    return ReviewOutcomeRead(status=outcome.status)


@router.post("/{records}/{record_id}/{action}")
async def api_customer_action(
    token: str,
    records: Literal["pages", "characters"],
    record_id: int,
    action: str,
    body: ActionIn,
    db: AsyncSession = Depends(get_db),
):
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action {action!r}")
    kind = "page" if records == "pages" else "character"
    record = await feedback.customer_action(
        db, token, kind, record_id, action.replace("-", "_"),
        expected_version=body.expected_version, text=body.text,
    )
    project = await workflow.load_project_by_token(db, token)
    if isinstance(record, Page):
        return _page_view(project, record)
    return _character_view(project, record)
