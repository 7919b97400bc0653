"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the job engine.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    generation_jobs: One durable record per book-generation run. ``step`` is
        the program counter and always names the next unit of work.
    books: The book being produced, including its constitution and the
        embedded cover asset job (``cover_*`` columns).
    chapters / sections: Content units materialized from the plan and
        promoted one-way as writing progresses.

Status columns are validated with ``@validates`` against each model's
VALID_TRANSITIONS, so an illegal status change raises
InvalidStateTransitionError before it ever reaches the database.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from chronicle.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values read
    back in tests are naive. Everything stored here is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStatus(enum.Enum):
    """Lifecycle status of a generation job.

    Flow:
        queued → running → complete
        queued/running → failed

    Terminal States:
        complete, failed (never resumed)
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)


class UnitStatus(enum.Enum):
    """Status of a chapter or section.

    Sections move draft → canonical once promoted; chapters move
    draft → locked once all their sections are canonical.
    """

    DRAFT = "draft"
    LOCKED = "locked"
    CANONICAL = "canonical"


class CoverStatus(enum.Enum):
    """Status of the book-level cover asset job. NULL on the book means absent."""

    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class BookStatus(enum.Enum):
    DRAFTING = "drafting"
    FINAL = "final"


class GenerationMode(enum.Enum):
    """Writing mode. Polished runs one extra polish pass per section."""

    DRAFT = "draft"
    POLISHED = "polished"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Book(Base):
    """A book being generated.

    Attributes:
        id: Internal UUID primary key.
        title: Working title (from the story preview).
        genre: Genre key, used for the cover font table.
        author_name: Optional author line for cover typography.
        status: drafting until the finalization gate completes the job.
        constitution_json: Seven-field constitution, written once.
        constitution_locked: True once the constitution is finalized.
        cover_status: Embedded cover asset job status (NULL = never requested).
        cover_started_at: When the current cover generation started.
        cover_generated_at: When the current cover became ready.
        cover_attempts: Number of cover generations started for this book.
        cover_path: Relative path of the cover PNG under the workspace.
        cover_concept: Distilled visual concept, reused on regeneration.
    """

    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    genre: Mapped[str] = mapped_column(String(50), nullable=False, default="literary_fiction")
    author_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[BookStatus] = mapped_column(
        Enum(
            BookStatus,
            native_enum=True,
            name="bookstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=BookStatus.DRAFTING,
    )

    constitution_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    constitution_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    constitution_locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Cover asset job (embedded)
    cover_status: Mapped[CoverStatus | None] = mapped_column(
        Enum(
            CoverStatus,
            native_enum=True,
            name="coverstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )
    cover_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cover_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cover_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cover_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cover_concept: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    chapters: Mapped[list["Chapter"]] = relationship(
        "Chapter",
        back_populates="book",
        order_by="Chapter.index",
    )

    def __repr__(self) -> str:
        cover = self.cover_status.value if self.cover_status else None
        return f"<Book(id={self.id!s:.8}, title={self.title!r}, cover_status={cover!r})>"


class Chapter(Base):
    """A chapter materialized from the plan.

    Chapters are locked exactly once, when their last section is promoted.
    """

    __tablename__ = "chapters"

    VALID_TRANSITIONS = {
        UnitStatus.DRAFT: [UnitStatus.LOCKED],
        UnitStatus.LOCKED: [],
        UnitStatus.CANONICAL: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    book_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[UnitStatus] = mapped_column(
        Enum(
            UnitStatus,
            native_enum=True,
            name="unitstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=UnitStatus.DRAFT,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    book: Mapped["Book"] = relationship("Book", back_populates="chapters")
    sections: Mapped[list["Section"]] = relationship(
        "Section",
        back_populates="chapter",
        order_by="Section.index",
    )

    __table_args__ = (UniqueConstraint("book_id", "index", name="uq_chapters_book_id_index"),)

    @validates("status")
    def validate_status_change(self, key: str, value: UnitStatus) -> UnitStatus:
        """Reject any chapter status change other than draft → locked.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        return _validate_transition(self, value)

    def __repr__(self) -> str:
        return f"<Chapter(index={self.index}, title={self.title!r}, status={self.status.value!r})>"


class Section(Base):
    """A section of a chapter.

    ``content_text`` is written once, in the same transaction that promotes
    the section to canonical. A canonical section is never rewritten.
    """

    __tablename__ = "sections"

    VALID_TRANSITIONS = {
        UnitStatus.DRAFT: [UnitStatus.CANONICAL],
        UnitStatus.LOCKED: [],
        UnitStatus.CANONICAL: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    chapter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chapters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    goal: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_words: Mapped[int] = mapped_column(Integer, nullable=False, default=600)
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[UnitStatus] = mapped_column(
        Enum(
            UnitStatus,
            native_enum=True,
            name="unitstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=UnitStatus.DRAFT,
    )
    promoted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    chapter: Mapped["Chapter"] = relationship("Chapter", back_populates="sections")

    __table_args__ = (
        UniqueConstraint("chapter_id", "index", name="uq_sections_chapter_id_index"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: UnitStatus) -> UnitStatus:
        """Reject any section status change other than draft → canonical.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        return _validate_transition(self, value)

    def __repr__(self) -> str:
        return f"<Section(index={self.index}, title={self.title!r}, status={self.status.value!r})>"


class GenerationJob(Base):
    """Durable record of one book-generation run.

    A job is advanced one step per tick. Every field needed to resume lives
    here, so any process can pick the job up after a crash.

    Attributes:
        step: Encoded program counter (created, constitution, plan,
            write_ch<N>_s<M>, finalize, complete). Always the next unit of work.
        progress: Advisory 0-100 percentage; never decreases.
        attempt: In-step consistency retry counter, reset when the step advances.
        auto_resume_attempts: Incremented only by the watchdog.
        story_synopsis: Rolling summary carried between writing steps.
        error: Failure message; set only when status is failed.
        lease_token / lease_expires_at: Per-job tick lease.
        updated_at: Last touched by any write, including lease and watchdog
            counter writes; the staleness signal.
    """

    __tablename__ = "generation_jobs"

    VALID_TRANSITIONS = {
        JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.FAILED],
        JobStatus.RUNNING: [JobStatus.COMPLETE, JobStatus.FAILED],
        JobStatus.COMPLETE: [],  # Terminal state - no transitions allowed
        JobStatus.FAILED: [],  # Terminal state - no transitions allowed
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    book_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    genre: Mapped[str] = mapped_column(String(50), nullable=False, default="literary_fiction")
    user_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # title, logline, blurb, setting, promise[], cast[], target_pages, mode
    preview: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            native_enum=True,
            name="jobstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    step: Mapped[str] = mapped_column(String(50), nullable=False, default="created")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_resume_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    story_synopsis: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Tick lease
    lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    book: Mapped["Book"] = relationship("Book")

    # Composite index for watchdog queries (stale active jobs below the ceiling)
    __table_args__ = (
        Index(
            "ix_generation_jobs_status_updated_at_attempts",
            "status",
            "updated_at",
            "auto_resume_attempts",
        ),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Validate status transition before committing to database.

        Args:
            key: The attribute name being validated (always "status").
            value: The new JobStatus value being assigned.

        Returns:
            The validated JobStatus value if transition is valid.

        Raises:
            InvalidStateTransitionError: If the transition is not valid according
                to VALID_TRANSITIONS mapping.

        Note:
            - Validation is skipped on initial job creation (status is None)
            - Terminal states (COMPLETE, FAILED) have no valid transitions

        Example:
            >>> job.status = JobStatus.QUEUED
            >>> job.status = JobStatus.RUNNING  # Valid - allowed
            >>> job.status = JobStatus.QUEUED  # Invalid - raises exception
        """
        return _validate_transition(self, value)

    @property
    def mode(self) -> GenerationMode:
        """Writing mode from the preview (draft unless polished was requested)."""
        try:
            return GenerationMode((self.preview or {}).get("mode", "draft"))
        except ValueError:
            return GenerationMode.DRAFT

    @property
    def target_pages(self) -> int:
        return int((self.preview or {}).get("target_pages", 30))

    def __repr__(self) -> str:
        return (
            f"<GenerationJob(id={self.id!s:.8}, step={self.step!r}, "
            f"status={self.status.value!r}, progress={self.progress})>"
        )


def _validate_transition(model: Any, value: Any) -> Any:
    # Skip validation on initial creation (status is None)
    if model.status is None:
        return value

    allowed_transitions = model.VALID_TRANSITIONS.get(model.status, [])
    if value != model.status and value not in allowed_transitions:
        raise InvalidStateTransitionError(
            f"Invalid transition: {model.status.value} → {value.value}",
            from_status=model.status,
            to_status=value,
        )
    return value
