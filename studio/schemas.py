from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Any, Optional, List
from datetime import datetime

from .artifacts import to_payload
from .models import AdminReplyType, ProjectStatus, ComparisonTargetKind
from .services.comparison import Decision


def _artifact(value: Any) -> Any:
    if value is None or isinstance(value, dict):
        return value
    return to_payload(value)


# =========================
# INTAKE
# =========================
class PageCreate(BaseModel):
    page_number: Optional[int] = None
    story_text: Optional[str] = None
    scene_description: Optional[str] = None
    characters: List[str] = []  # names of secondary characters featured on the page


class CharacterCreate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    description: Optional[str] = None
    is_main: bool = False


class ProjectCreate(BaseModel):
    book_title: Optional[str] = None
    author_firstname: Optional[str] = None
    author_lastname: Optional[str] = None
    author_email: Optional[EmailStr] = None
    author_phone: Optional[str] = None
    illustration_aspect_ratio: Optional[str] = None
    pages: List[PageCreate] = []
    characters: List[CharacterCreate] = []


# =========================
# ADMIN VIEWS
# =========================
class CharacterRead(BaseModel):
    id: int
    name: Optional[str] = None
    role: Optional[str] = None
    description: Optional[str] = None
    is_main: bool
    image: Optional[dict] = None
    sketch: Optional[dict] = None
    customer_image_url: Optional[str] = None
    customer_sketch_url: Optional[str] = None
    feedback_notes: Optional[str] = None
    feedback_history: List[dict] = []
    is_resolved: bool = False
    admin_reply: Optional[str] = None
    admin_reply_type: Optional[AdminReplyType] = None
    version: int

    coerce_artifacts = field_validator("image", "sketch", mode="before")(_artifact)

    class Config:
        from_attributes = True


class PageRead(BaseModel):
    id: int
    page_number: int
    story_text: Optional[str] = None
    scene_description: Optional[str] = None
    original_story_text: Optional[str] = None
    original_scene_description: Optional[str] = None
    illustration: Optional[dict] = None
    sketch: Optional[dict] = None
    customer_illustration_url: Optional[str] = None
    customer_sketch_url: Optional[str] = None
    original_illustration_url: Optional[str] = None
    feedback_notes: Optional[str] = None
    feedback_history: List[dict] = []
    is_resolved: bool = False
    conversation_thread: List[dict] = []
    admin_reply: Optional[str] = None
    admin_reply_type: Optional[AdminReplyType] = None
    admin_reply_at: Optional[datetime] = None
    version: int

    coerce_artifacts = field_validator("illustration", "sketch", mode="before")(_artifact)

    class Config:
        from_attributes = True


class ProjectRead(BaseModel):
    id: int
    status: ProjectStatus
    book_title: Optional[str] = None
    author_firstname: Optional[str] = None
    author_lastname: Optional[str] = None
    author_email: Optional[str] = None
    author_phone: Optional[str] = None
    illustration_aspect_ratio: Optional[str] = None
    review_token: Optional[str] = None
    character_send_count: int
    illustration_send_count: int
    pages: List[PageRead] = []
    characters: List[CharacterRead] = []

    class Config:
        from_attributes = True


class ComparisonRead(BaseModel):
    id: int
    target_kind: ComparisonTargetKind
    target_id: int
    old_url: str
    new_url: str

    class Config:
        from_attributes = True


class SendResultRead(BaseModel):
    status: ProjectStatus
    target: str
    notification: str
    send_count: int
    round_number: Optional[int] = None
    resolved: int


class JobRead(BaseModel):
    id: str
    project_id: int
    status: str
    total: int
    generated: int
    failed: int
    cancel_requested: bool
    progress: float
    error: Optional[str] = None
    results: List[dict] = []

    class Config:
        from_attributes = True


class BatchResultRead(BaseModel):
    generated: int
    failed: int
    cancelled: int
    advanced: bool
    status: ProjectStatus
    items: List[dict]


class IllustrationResultRead(BaseModel):
    page: PageRead
    url: str
    comparison: Optional[ComparisonRead] = None
    sketch: Optional[dict] = None

    coerce_artifacts = field_validator("sketch", mode="before")(_artifact)


class StageResultRead(BaseModel):
    url: str
    committed: bool
    comparison: Optional[ComparisonRead] = None


# =========================
# REQUEST BODIES
# =========================
class Versioned(BaseModel):
    expected_version: int = Field(ge=0)


class ActionIn(Versioned):
    text: Optional[str] = None


class GenerateCharactersIn(BaseModel):
    character_ids: Optional[List[int]] = None
    background: bool = True


class GenerateIllustrationIn(BaseModel):
    custom_prompt: Optional[str] = None
    current_image_url: Optional[str] = None
    reference_urls: List[str] = []
    anchor_url: Optional[str] = None


class ComparisonDecisionIn(BaseModel):
    decision: Decision


# =========================
# CUSTOMER VIEWS
# =========================
class HistoryRead(BaseModel):
    current: List[dict] = []
    previous: List[dict] = []
    hidden_count: int = 0
    toggle_label: Optional[str] = None


class ReviewCharacterRead(BaseModel):
    id: int
    name: Optional[str] = None
    role: Optional[str] = None
    is_main: bool
    image_url: Optional[str] = None
    sketch_url: Optional[str] = None
    feedback_notes: Optional[str] = None
    is_resolved: bool
    admin_comment: Optional[str] = None
    history: HistoryRead
    version: int


class ReviewPageRead(BaseModel):
    id: int
    page_number: int
    state: str
    story_text: Optional[str] = None
    illustration_url: Optional[str] = None
    sketch_url: Optional[str] = None
    feedback_notes: Optional[str] = None
    is_resolved: bool
    conversation_thread: List[dict] = []
    admin_reply: Optional[str] = None
    admin_reply_type: Optional[AdminReplyType] = None
    history: HistoryRead
    version: int


class ReviewProjectRead(BaseModel):
    book_title: Optional[str] = None
    author_name: str
    status: ProjectStatus
    characters: List[ReviewCharacterRead] = []
    pages: List[ReviewPageRead] = []


class ReviewOutcomeRead(BaseModel):
    status: ProjectStatus
    generation_started: bool = False
