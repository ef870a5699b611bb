"""studio baseline schema

Revision ID: 0001_studio_baseline
Revises: 
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_studio_baseline"
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(astext_type=sa.Text())

project_status = sa.Enum(
    "draft", "character_generation", "character_generation_complete", "character_review",
    "character_revision_needed", "characters_regenerated", "characters_approved",
    "illustration_review", "illustration_revision_needed", "completed",
    name="projectstatus",
)
review_target = sa.Enum("characters", "illustrations", name="reviewtarget")
admin_reply_type = sa.Enum("reply", "comment", name="adminreplytype")
target_kind = sa.Enum("page", "character", name="comparisontargetkind")


def upgrade() -> None:
    # --- projects ---
    op.create_table(
        "project",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("book_title", sa.String(200)),
        sa.Column("author_firstname", sa.String(100)),
        sa.Column("author_lastname", sa.String(100)),
        sa.Column("author_email", sa.String(320)),
        sa.Column("author_phone", sa.String(40)),
        sa.Column("status", project_status, nullable=False),
        sa.Column("review_token", sa.String(64)),
        sa.Column("character_send_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("illustration_send_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("illustration_aspect_ratio", sa.String(16)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_project_id", "project", ["id"])
    op.create_index("ix_project_review_token", "project", ["review_token"], unique=True)

    # --- pages ---
    op.create_table(
        "page",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("project.id", ondelete="CASCADE"), nullable=False),
        sa.Column("page_number", sa.Integer, nullable=False),
        sa.Column("story_text", sa.Text),
        sa.Column("scene_description", sa.Text),
        sa.Column("original_story_text", sa.Text),
        sa.Column("original_scene_description", sa.Text),
        sa.Column("illustration", JSONB),
        sa.Column("sketch", JSONB),
        sa.Column("customer_illustration_url", sa.String),
        sa.Column("customer_sketch_url", sa.String),
        sa.Column("original_illustration_url", sa.String),
        sa.Column("feedback_notes", sa.Text),
        sa.Column("feedback_history", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("conversation_thread", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("admin_reply", sa.Text),
        sa.Column("admin_reply_type", admin_reply_type),
        sa.Column("admin_reply_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "page_number", name="uq_page_project_number"),
    )
    op.create_index("ix_page_id", "page", ["id"])
    op.create_index("ix_page_project_id", "page", ["project_id"])

    # --- characters ---
    op.create_table(
        "character",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("project.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(120)),
        sa.Column("role", sa.String(120)),
        sa.Column("description", sa.Text),
        sa.Column("is_main", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("image", JSONB),
        sa.Column("sketch", JSONB),
        sa.Column("customer_image_url", sa.String),
        sa.Column("customer_sketch_url", sa.String),
        sa.Column("generation_prompt", sa.Text),
        sa.Column("feedback_notes", sa.Text),
        sa.Column("feedback_history", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("admin_reply", sa.Text),
        sa.Column("admin_reply_type", admin_reply_type),
        sa.Column("admin_reply_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_character_id", "character", ["id"])
    op.create_index("ix_character_project_id", "character", ["project_id"])
    op.create_index(
        "uq_character_main_per_project", "character", ["project_id"],
        unique=True, postgresql_where=sa.text("is_main"),
    )

    op.create_table(
        "page_characters",
        sa.Column("page_id", sa.Integer, sa.ForeignKey("page.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("character_id", sa.Integer, sa.ForeignKey("character.id", ondelete="CASCADE"), primary_key=True),
        sa.UniqueConstraint("page_id", "character_id", name="uq_page_character"),
    )

    # --- revision rounds / comparisons ---
    op.create_table(
        "revision_round",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("project.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target", review_target, nullable=False),
        sa.Column("number", sa.Integer, nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "target", "number", name="uq_round_project_target_number"),
    )
    op.create_index("ix_revision_round_project_id", "revision_round", ["project_id"])

    op.create_table(
        "comparison_draft",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("project.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target_kind", target_kind, nullable=False),
        sa.Column("target_id", sa.Integer, nullable=False),
        sa.Column("old_url", sa.String, nullable=False),
        sa.Column("new_url", sa.String, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("target_kind", "target_id", name="uq_comparison_target"),
    )
    op.create_index("ix_comparison_draft_project_id", "comparison_draft", ["project_id"])


def downgrade() -> None:
    op.drop_table("comparison_draft")
    op.drop_table("revision_round")
    op.drop_table("page_characters")
    op.drop_index("uq_character_main_per_project", table_name="character")
    op.drop_table("character")
    op.drop_table("page")
    op.drop_table("project")
    for enum in (target_kind, admin_reply_type, review_target, project_status):
        enum.drop(op.get_bind(), checkfirst=True)
