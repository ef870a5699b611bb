from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, func,
    Table, UniqueConstraint, Index, JSON,
)
from sqlalchemy.orm import relationship, synonym
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import Enum as SAEnum
import sqlalchemy as sa
import enum

from .database import Base
from .artifacts import ArtifactType

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ProjectStatus(str, enum.Enum):
    draft = "draft"
    character_generation = "character_generation"
    character_generation_complete = "character_generation_complete"
    character_review = "character_review"
    character_revision_needed = "character_revision_needed"
    characters_regenerated = "characters_regenerated"
    characters_approved = "characters_approved"
    illustration_review = "illustration_review"
    illustration_revision_needed = "illustration_revision_needed"
    completed = "completed"


class ReviewTarget(str, enum.Enum):
    characters = "characters"
    illustrations = "illustrations"


class AdminReplyType(str, enum.Enum):
    reply = "reply"
    comment = "comment"


class ComparisonTargetKind(str, enum.Enum):
    page = "page"
    character = "character"


# ---------------------------
# PROJECTS
# ---------------------------
class Project(Base):
    __tablename__ = "project"

    id = Column(Integer, primary_key=True, index=True)
    book_title = Column(String(200), nullable=True)
    author_firstname = Column(String(100), nullable=True)
    author_lastname = Column(String(100), nullable=True)
    author_email = Column(String(320), nullable=True)
    author_phone = Column(String(40), nullable=True)

    status = Column(SAEnum(ProjectStatus), default=ProjectStatus.draft, nullable=False)
    review_token = Column(String(64), unique=True, nullable=True, index=True)

    # each counter doubles as the current revision round number of its target
    character_send_count = Column(Integer, default=0, nullable=False)
    illustration_send_count = Column(Integer, default=0, nullable=False)

    illustration_aspect_ratio = Column(String(16), nullable=True)  # "8:10" | "8.5:8.5" | "8.5:11"

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    pages = relationship(
        "Page",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Page.page_number.asc()",
        lazy="selectin",
    )
    characters = relationship(
        "Character",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Character.id.asc()",
        lazy="selectin",
    )
    rounds = relationship(
        "RevisionRound",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RevisionRound.number.asc()",
        lazy="selectin",
    )

    @property
    def author_name(self) -> str:
        full = f"{self.author_firstname or ''} {self.author_lastname or ''}".strip()
        return full or "Customer"

    @property
    def main_character(self):
        return next((c for c in self.characters if c.is_main), None)

    def __repr__(self):
        return f"<Project {self.id} {self.status}>"


page_characters = Table(
    "page_characters",
    Base.metadata,
    Column("page_id", ForeignKey("page.id", ondelete="CASCADE"), primary_key=True),
    Column("character_id", ForeignKey("character.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("page_id", "character_id", name="uq_page_character"),
)


# ---------------------------
# PAGES
# ---------------------------
class Page(Base):
    __tablename__ = "page"

    supports_threading = True
    kind = ComparisonTargetKind.page

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    page_number = Column(Integer, nullable=False)

    story_text = Column(Text, nullable=True)
    scene_description = Column(Text, nullable=True)
    # captured the first time the page goes out for review, never overwritten
    original_story_text = Column(Text, nullable=True)
    original_scene_description = Column(Text, nullable=True)

    illustration = Column(ArtifactType(), nullable=True)
    colored = synonym("illustration")
    sketch = Column(ArtifactType(), nullable=True)
    customer_illustration_url = Column(String, nullable=True)
    customer_sketch_url = Column(String, nullable=True)
    original_illustration_url = Column(String, nullable=True)

    feedback_notes = Column(Text, nullable=True)
    feedback_history = Column(JSONType, default=list, nullable=False)   # [{note, created_at, revision_round, round_id, ...}]
    is_resolved = Column(Boolean, default=False, nullable=False)
    conversation_thread = Column(JSONType, default=list, nullable=False)  # [{type, text, at}]
    admin_reply = Column(Text, nullable=True)
    admin_reply_type = Column(SAEnum(AdminReplyType), nullable=True)
    admin_reply_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    project = relationship("Project", back_populates="pages")
    characters = relationship("Character", secondary=page_characters, back_populates="pages", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("project_id", "page_number", name="uq_page_project_number"),
    )
    # UPDATEs carry "WHERE version = <loaded>"; the ledger bumps it explicitly
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def label(self) -> str:
        return f"page {self.page_number}"

    def __repr__(self):
        return f"<Page {self.project_id}#{self.page_number}>"


# ---------------------------
# CHARACTERS
# ---------------------------
class Character(Base):
    __tablename__ = "character"

    supports_threading = False
    kind = ComparisonTargetKind.character

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String(120), nullable=True)
    role = Column(String(120), nullable=True)
    description = Column(Text, nullable=True)
    is_main = Column(Boolean, default=False, nullable=False)

    image = Column(ArtifactType(), nullable=True)
    colored = synonym("image")
    sketch = Column(ArtifactType(), nullable=True)
    customer_image_url = Column(String, nullable=True)
    customer_sketch_url = Column(String, nullable=True)
    generation_prompt = Column(Text, nullable=True)

    feedback_notes = Column(Text, nullable=True)
    feedback_history = Column(JSONType, default=list, nullable=False)
    is_resolved = Column(Boolean, default=False, nullable=False)
    # characters only ever carry an informational admin comment
    admin_reply = Column(Text, nullable=True)
    admin_reply_type = Column(SAEnum(AdminReplyType), nullable=True)
    admin_reply_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    project = relationship("Project", back_populates="characters")
    pages = relationship("Page", secondary=page_characters, back_populates="characters", lazy="selectin")

    __table_args__ = (
        # one main character per project
        Index(
            "uq_character_main_per_project",
            "project_id",
            unique=True,
            postgresql_where=sa.text("is_main"),
            sqlite_where=sa.text("is_main = 1"),
        ),
    )
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def label(self) -> str:
        return self.name or self.role or f"character {self.id}"

    def __repr__(self):
        return f"<Character {self.label}>"


# ---------------------------
# REVISION ROUNDS
# ---------------------------
class RevisionRound(Base):
    """One customer review cycle of a target, opened by a send that carried imagery."""

    __tablename__ = "revision_round"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    target = Column(SAEnum(ReviewTarget), nullable=False)
    number = Column(Integer, nullable=False)
    opened_at = Column(DateTime(timezone=True), server_default=func.now())

    project = relationship("Project", back_populates="rounds")

    __table_args__ = (
        UniqueConstraint("project_id", "target", "number", name="uq_round_project_target_number"),
    )


# ---------------------------
# PENDING REGENERATION COMPARISONS
# ---------------------------
class ComparisonDraft(Base):
    __tablename__ = "comparison_draft"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    target_kind = Column(SAEnum(ComparisonTargetKind), nullable=False)
    target_id = Column(Integer, nullable=False)
    old_url = Column(String, nullable=False)
    new_url = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # exactly one comparison in flight per target
    __table_args__ = (
        UniqueConstraint("target_kind", "target_id", name="uq_comparison_target"),
    )
