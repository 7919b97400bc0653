"""001 initial generation tables

Revision ID: 001_initial_generation
Revises:
Create Date: 2026-10-01

Creates the book-generation schema:
    - books: book record with constitution and embedded cover asset job
    - chapters / sections: content units materialized from the plan
    - generation_jobs: durable job record (step is the program counter)

The watchdog query filters on (status, updated_at, auto_resume_attempts),
so that triple gets a composite index.
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_generation"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

jobstatus = postgresql.ENUM("queued", "running", "complete", "failed", name="jobstatus", create_type=False)
unitstatus = postgresql.ENUM("draft", "locked", "canonical", name="unitstatus", create_type=False)
coverstatus = postgresql.ENUM("pending", "generating", "ready", "failed", name="coverstatus", create_type=False)
bookstatus = postgresql.ENUM("drafting", "final", name="bookstatus", create_type=False)

ENUMS = (jobstatus, unitstatus, coverstatus, bookstatus)


def upgrade() -> None:
    """Create enums, then books, chapters, sections and generation_jobs."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "books",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("genre", sa.String(50), nullable=False),
        sa.Column("author_name", sa.String(255), nullable=True),
        sa.Column("status", bookstatus, nullable=False),
        sa.Column("constitution_json", sa.JSON(), nullable=False),
        sa.Column("constitution_locked", sa.Boolean(), nullable=False),
        sa.Column("constitution_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cover_status", coverstatus, nullable=True),
        sa.Column("cover_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cover_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cover_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cover_path", sa.String(500), nullable=True),
        sa.Column("cover_concept", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "chapters",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        sa.Column("status", unitstatus, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("book_id", "index", name="uq_chapters_book_id_index"),
    )
    op.create_index("ix_chapters_book_id", "chapters", ["book_id"])

    op.create_table(
        "sections",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("target_words", sa.Integer(), nullable=False, server_default="600"),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("status", unitstatus, nullable=False),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("chapter_id", "index", name="uq_sections_chapter_id_index"),
    )
    op.create_index("ix_sections_chapter_id", "sections", ["chapter_id"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("genre", sa.String(50), nullable=False),
        sa.Column("user_prompt", sa.Text(), nullable=False),
        sa.Column("preview", sa.JSON(), nullable=False),
        sa.Column("status", jobstatus, nullable=False),
        sa.Column("step", sa.String(50), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("auto_resume_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("story_synopsis", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("lease_token", sa.String(36), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_generation_jobs_book_id", "generation_jobs", ["book_id"])
    op.create_index(
        "ix_generation_jobs_status_updated_at_attempts",
        "generation_jobs",
        ["status", "updated_at", "auto_resume_attempts"],
    )


def downgrade() -> None:
    """Drop the generation tables and their enums."""
    op.drop_index("ix_generation_jobs_status_updated_at_attempts", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_book_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
    op.drop_index("ix_sections_chapter_id", table_name="sections")
    op.drop_table("sections")
    op.drop_index("ix_chapters_book_id", table_name="chapters")
    op.drop_table("chapters")
    op.drop_table("books")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
