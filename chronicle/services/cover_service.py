"""Book-level cover asset job.

The cover status lives on the book row (``cover_*`` columns) and moves:

    NULL/failed/pending → generating → ready | failed

This service owns every write to those columns. Reads always go to the
database in a fresh session so callers never decide on a cached value.
Writes that end a generation are conditional on ``cover_started_at`` so a
late finish can never clobber a newer generation.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronicle.database import require_session_factory
from chronicle.models import Book, CoverStatus, GenerationJob, ensure_utc, utcnow
from chronicle.schemas.cover import Concept
from chronicle.services.cover.pipeline import CoverPipeline, CoverRequest, CoverResult
from chronicle.utils.filesystem import write_cover_image
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_SUMMARY = "A compelling story"

IN_PROGRESS_STATUSES = (CoverStatus.PENDING, CoverStatus.GENERATING)


@dataclass
class CoverSnapshot:
    """Cover columns of a book as read in one query."""

    book_id: uuid.UUID
    status: CoverStatus | None
    started_at: datetime | None
    attempts: int
    generated_at: datetime | None = None
    path: str | None = None


def build_story_summary(
    preview: dict[str, Any] | None,
    user_prompt: str | None,
    constitution: dict[str, Any] | None,
) -> str:
    """Summary text for concept distillation (never includes the title)."""
    parts: list[str] = []
    preview = preview or {}

    if preview.get("blurb"):
        parts.append(preview["blurb"])
    if preview.get("logline"):
        parts.append(preview["logline"])
    if preview.get("setting"):
        parts.append(f"Setting: {preview['setting']}")
    cast = preview.get("cast") or []
    if cast:
        lead = cast[0]
        parts.append(f"Main character: {lead.get('name', '')} - {lead.get('tagline', '')}")
    if constitution and constitution.get("central_thesis"):
        parts.append(f"Theme: {constitution['central_thesis']}")

    if not parts and user_prompt:
        parts.append(user_prompt)

    return "\n\n".join(parts) or DEFAULT_SUMMARY


def is_cover_stale(snapshot: CoverSnapshot, timeout_minutes: int, now: datetime | None = None) -> bool:
    """True when a pending/generating cover started longer ago than the timeout."""
    if snapshot.status not in IN_PROGRESS_STATUSES:
        return False
    started_at = ensure_utc(snapshot.started_at)
    if started_at is None:
        return True
    return (now or utcnow()) - started_at > timedelta(minutes=timeout_minutes)


def build_default_pipeline() -> CoverPipeline:
    """Gemini serves concept, image and vision roles."""
    from chronicle.clients.gemini import GeminiClient

    gemini = GeminiClient()
    return CoverPipeline(text_model=gemini, image_model=gemini, vision_model=gemini)


class CoverService:
    """Reads and drives a book's cover asset job."""

    def __init__(
        self,
        pipeline: CoverPipeline | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._pipeline = pipeline
        self.session_factory = require_session_factory(session_factory)

    @property
    def pipeline(self) -> CoverPipeline:
        if self._pipeline is None:
            self._pipeline = build_default_pipeline()
        return self._pipeline

    async def read_status(self, book_id: uuid.UUID) -> CoverSnapshot | None:
        """Fresh read of the cover columns; None if the book does not exist."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    Book.cover_status,
                    Book.cover_started_at,
                    Book.cover_attempts,
                    Book.cover_generated_at,
                    Book.cover_path,
                ).where(Book.id == book_id)
            )
            row = result.one_or_none()

        if row is None:
            return None
        return CoverSnapshot(
            book_id=book_id,
            status=row.cover_status,
            started_at=ensure_utc(row.cover_started_at),
            attempts=row.cover_attempts or 0,
            generated_at=ensure_utc(row.cover_generated_at),
            path=row.cover_path,
        )

    async def request_cover(self, book_id: uuid.UUID, regenerate: bool = False) -> str:
        """Mark a book's cover pending for background generation.

        Returns:
            "queued", "ready" (already done) or "in_progress" (already running).

        Raises:
            LookupError: If the book does not exist.
        """
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            book = await db.get(Book, book_id, with_for_update=True)
            if book is None:
                raise LookupError(f"Book not found: {book_id}")

            if not regenerate and book.cover_status == CoverStatus.READY:
                return "ready"
            if not regenerate and book.cover_status in IN_PROGRESS_STATUSES:
                return "in_progress"

            book.cover_status = CoverStatus.PENDING
            book.cover_started_at = utcnow()

        log.info("cover_requested", book_id=str(book_id), regenerate=regenerate)
        return "queued"

    async def mark_failed_if_stale(self, snapshot: CoverSnapshot, timeout_minutes: int) -> bool:
        """Escalate a timed-out pending/generating cover to failed.

        Compare-and-swap on (status, started_at): if the cover moved on since
        ``snapshot`` was read, nothing is written.

        Returns:
            True if this call marked the cover failed.
        """
        if not is_cover_stale(snapshot, timeout_minutes):
            return False

        marked = await self._mark_failed_where(snapshot.book_id, snapshot.started_at, snapshot.status)
        if marked:
            log.warning(
                "cover_generation_timed_out",
                book_id=str(snapshot.book_id),
                previous_status=snapshot.status.value if snapshot.status else None,
                timeout_minutes=timeout_minutes,
            )
        return marked

    async def mark_generation_failed(self, book_id: uuid.UUID, started_at: datetime | None) -> bool:
        """Fail the generation that started at ``started_at``, if still running."""
        return await self._mark_failed_where(book_id, started_at, None)

    async def _mark_failed_where(
        self,
        book_id: uuid.UUID,
        started_at: datetime | None,
        status: CoverStatus | None,
    ) -> bool:
        conditions = [Book.id == book_id]
        if status is not None:
            conditions.append(Book.cover_status == status)
        else:
            conditions.append(Book.cover_status.in_(IN_PROGRESS_STATUSES))
        if started_at is None:
            conditions.append(Book.cover_started_at.is_(None))
        else:
            conditions.append(Book.cover_started_at == started_at)

        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            result = await db.execute(
                update(Book)
                .where(*conditions)
                .values(cover_status=CoverStatus.FAILED)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0  # type: ignore[attr-defined]

    async def _start_generation(
        self,
        book_id: uuid.UUID,
        regenerate: bool,
    ) -> tuple[datetime, dict[str, Any]] | None:
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            book = await db.get(Book, book_id, with_for_update=True)
            if book is None:
                raise LookupError(f"Book not found: {book_id}")

            if not regenerate and book.cover_status in (CoverStatus.READY, CoverStatus.GENERATING):
                log.info(
                    "cover_generation_skipped",
                    book_id=str(book_id),
                    cover_status=book.cover_status.value,
                )
                return None

            job_result = await db.execute(
                select(GenerationJob.preview, GenerationJob.user_prompt)
                .where(GenerationJob.book_id == book_id)
                .order_by(GenerationJob.created_at.desc())
                .limit(1)
            )
            job_row = job_result.one_or_none()

            started_at = utcnow()
            book.cover_status = CoverStatus.GENERATING
            book.cover_started_at = started_at
            book.cover_attempts = (book.cover_attempts or 0) + 1

            preview = dict(job_row.preview or {}) if job_row else {}
            context = {
                "title": book.title,
                "author": book.author_name,
                "genre": book.genre,
                "concept": book.cover_concept,
                "preview": preview,
                "summary": build_story_summary(
                    preview,
                    job_row.user_prompt if job_row else None,
                    book.constitution_json,
                ),
                "attempt_number": book.cover_attempts,
            }

        return started_at, context

    async def generate_for_book(self, book_id: uuid.UUID, regenerate: bool = False) -> CoverResult | None:
        """Run the cover pipeline for a book and record the outcome.

        Skips (returns None) when the cover is ready or already generating,
        unless ``regenerate`` is set. On regeneration a stored concept is
        reused. Any pipeline failure marks the cover failed and is reported
        through the returned result rather than raised. Cancellation also
        marks the cover failed before propagating.

        Raises:
            LookupError: If the book does not exist.
        """
        started = await self._start_generation(book_id, regenerate)
        if started is None:
            return None
        started_at, context = started

        log.info(
            "cover_generation_started",
            book_id=str(book_id),
            regenerate=regenerate,
            attempt_number=context["attempt_number"],
            reuse_concept=bool(regenerate and context["concept"]),
        )

        try:
            if regenerate and context["concept"]:
                result = await self.pipeline.regenerate_cover(
                    Concept.model_validate(context["concept"]),
                    context["title"],
                    context["author"],
                    context["genre"],
                )
            else:
                promise = context["preview"].get("promise") or []
                result = await self.pipeline.generate_cover(
                    CoverRequest(
                        summary=context["summary"],
                        genre=context["genre"],
                        title=context["title"],
                        mood=promise[0] if promise else None,
                        author=context["author"],
                    )
                )

            if not result.success or result.cover_bytes is None:
                raise RuntimeError(result.error or "Cover generation failed")

            cover_path = await asyncio.to_thread(write_cover_image, str(book_id), result.cover_bytes, "cover")
            if result.asset_bytes:
                await asyncio.to_thread(write_cover_image, str(book_id), result.asset_bytes, "asset")

        except asyncio.CancelledError:
            # Nothing will finish this attempt once the caller gives up on it.
            log.warning("cover_generation_cancelled", book_id=str(book_id))
            await self.mark_generation_failed(book_id, started_at)
            raise
        except Exception as e:
            log.error(
                "cover_generation_failed",
                book_id=str(book_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            await self.mark_generation_failed(book_id, started_at)
            return CoverResult(success=False, attempts=0, error=str(e))

        await self._mark_ready(book_id, started_at, cover_path, result.concept)
        log.info(
            "cover_generation_completed",
            book_id=str(book_id),
            attempts=result.attempts,
            visual_metaphor=result.concept.visual_metaphor if result.concept else None,
        )
        return result

    async def _mark_ready(
        self,
        book_id: uuid.UUID,
        started_at: datetime,
        cover_path: str,
        concept: Concept | None,
    ) -> None:
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            book = await db.get(Book, book_id, with_for_update=True)
            if book is None:
                return
            if ensure_utc(book.cover_started_at) != started_at:
                # A newer generation owns the cover now.
                log.warning("cover_result_superseded", book_id=str(book_id))
                return

            book.cover_status = CoverStatus.READY
            book.cover_generated_at = utcnow()
            book.cover_path = cover_path
            if concept is not None:
                book.cover_concept = concept.model_dump()
