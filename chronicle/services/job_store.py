"""Durable job, book and content-unit access.

Every method opens its own short transaction; no session is held across an
external call. Writes made on behalf of a tick go through
``leased_transaction``, which re-reads the job row under a row lock and
raises LeaseLostError if the tick no longer owns the job.

Lease protocol:
    acquire_lease() is a single conditional UPDATE matching the expected
    step, an active status and a free or expired lease. Zero rows updated
    means another tick owns the job.

    Lease writes touch ``updated_at`` like any other write to the job row.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from chronicle.database import require_session_factory
from chronicle.exceptions import LeaseLostError
from chronicle.models import (
    ACTIVE_JOB_STATUSES,
    Book,
    Chapter,
    GenerationJob,
    JobStatus,
    Section,
    UnitStatus,
    utcnow,
)
from chronicle.utils.logging import get_logger

log = get_logger(__name__)


class JobStore:
    """Persistence operations for generation jobs and their books."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = require_session_factory(session_factory)

    async def get(self, job_id: uuid.UUID) -> GenerationJob | None:
        async with self.session_factory() as db:
            return await db.get(GenerationJob, job_id)

    async def get_book(self, book_id: uuid.UUID) -> Book | None:
        async with self.session_factory() as db:
            return await db.get(Book, book_id)

    async def acquire_lease(
        self,
        job_id: uuid.UUID,
        expected_step: str,
        lease_seconds: int,
    ) -> str | None:
        """Claim the per-job tick lease.

        Args:
            job_id: Job to claim.
            expected_step: Step the caller read; a concurrent advance makes the claim fail.
            lease_seconds: Lease lifetime. An expired lease can be taken over.

        Returns:
            The lease token, or None if another tick owns the job.
        """
        token = str(uuid.uuid4())
        now = utcnow()

        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            result = await db.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.id == job_id,
                    GenerationJob.step == expected_step,
                    GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
                    or_(
                        GenerationJob.lease_token.is_(None),
                        GenerationJob.lease_expires_at < now,
                    ),
                )
                .values(
                    lease_token=token,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:  # type: ignore[attr-defined]
                return None

        return token

    async def release_lease(self, job_id: uuid.UUID, token: str) -> None:
        """Clear the lease if ``token`` still holds it."""
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            await db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.lease_token == token)
                .values(lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    async def extend_lease(self, job_id: uuid.UUID, token: str, seconds: int) -> None:
        """Push the lease expiry out before a long awaited call.

        Raises:
            LeaseLostError: If ``token`` no longer holds the lease.
        """
        async with self.leased_transaction(job_id, token) as (_db, job):
            job.lease_expires_at = utcnow() + timedelta(seconds=seconds)

    @asynccontextmanager
    async def leased_transaction(
        self,
        job_id: uuid.UUID,
        token: str,
    ) -> AsyncIterator[tuple[AsyncSession, GenerationJob]]:
        """Open a transaction with the job row locked and the lease verified.

        Raises:
            LeaseLostError: If the job is gone or the lease token changed.
        """
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            job = await db.get(GenerationJob, job_id, with_for_update=True)
            if job is None or job.lease_token != token:
                raise LeaseLostError(str(job_id))
            yield db, job

    async def update(self, job_id: uuid.UUID, token: str, **fields: object) -> GenerationJob:
        """Set job fields under the lease and return the refreshed job."""
        async with self.leased_transaction(job_id, token) as (_db, job):
            for name, value in fields.items():
                setattr(job, name, value)
        return job

    async def list_stale(
        self,
        older_than: datetime,
        attempts_below: int,
        limit: int,
    ) -> list[GenerationJob]:
        """Active jobs not updated since ``older_than`` and below the resume ceiling.

        Oldest first, at most ``limit`` rows.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationJob)
                .where(
                    GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
                    GenerationJob.updated_at < older_than,
                    GenerationJob.auto_resume_attempts < attempts_below,
                )
                .order_by(GenerationJob.updated_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_exhausted(self, ceiling: int) -> list[GenerationJob]:
        """Active jobs whose automatic resume attempts reached ``ceiling``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationJob)
                .where(
                    GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
                    GenerationJob.auto_resume_attempts >= ceiling,
                )
                .order_by(GenerationJob.updated_at.asc())
            )
            return list(result.scalars().all())

    async def list_inactive(self, older_than: datetime) -> list[GenerationJob]:
        """Active jobs with no write since ``older_than``, regardless of attempts."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationJob)
                .where(
                    GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
                    GenerationJob.updated_at < older_than,
                )
                .order_by(GenerationJob.updated_at.asc())
            )
            return list(result.scalars().all())

    async def increment_auto_resume_attempts(self, job_id: uuid.UUID) -> int:
        """Add one to the watchdog counter and return the new value.

        Like every write to the job row, this refreshes ``updated_at``, so a
        resumed job leaves the stale window until it goes quiet again.
        """
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            job = await db.get(GenerationJob, job_id, with_for_update=True)
            if job is None:
                return 0
            job.auto_resume_attempts = (job.auto_resume_attempts or 0) + 1
            return job.auto_resume_attempts

    async def mark_failed(
        self,
        job_id: uuid.UUID,
        error: str,
        token: str | None = None,
    ) -> bool:
        """Fail an active job and clear its lease.

        Args:
            job_id: Job to fail.
            error: Message stored on the job.
            token: When given, only fail the job if this lease still holds it.

        Returns:
            True if the job moved to failed, False if it was already terminal,
            missing, or owned by another tick.
        """
        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            job = await db.get(GenerationJob, job_id, with_for_update=True)
            if job is None or job.status not in ACTIVE_JOB_STATUSES:
                return False
            if token is not None and job.lease_token != token:
                return False

            job.status = JobStatus.FAILED
            job.error = error
            job.lease_token = None
            job.lease_expires_at = None
            job.completed_at = utcnow()

        log.warning("job_marked_failed", job_id=str(job_id), error=error[:200])
        return True

    async def load_chapters(self, book_id: uuid.UUID) -> list[Chapter]:
        """Chapters of a book in order, with their sections loaded in order."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Chapter)
                .where(Chapter.book_id == book_id)
                .options(selectinload(Chapter.sections))
                .order_by(Chapter.index.asc())
            )
            return list(result.scalars().all())

    async def previous_canonical_sections(
        self,
        book_id: uuid.UUID,
        chapter_index: int,
        section_index: int,
        limit: int = 2,
    ) -> list[str]:
        """Text of the last ``limit`` canonical sections before a position.

        Returned oldest first, ordered by (chapter index, section index).
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Section.content_text)
                .join(Chapter, Section.chapter_id == Chapter.id)
                .where(
                    Chapter.book_id == book_id,
                    Section.status == UnitStatus.CANONICAL,
                    or_(
                        Chapter.index < chapter_index,
                        (Chapter.index == chapter_index) & (Section.index < section_index),
                    ),
                )
                .order_by(Chapter.index.desc(), Section.index.desc())
                .limit(limit)
            )
            texts = [text for text in result.scalars().all() if text]
        return list(reversed(texts))
