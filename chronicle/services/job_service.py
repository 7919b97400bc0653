"""Job creation.

A new job is a book in ``drafting`` plus a generation job in
``queued/created`` at progress 0. Nothing else happens until the first tick.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronicle.database import require_session_factory
from chronicle.models import Book, BookStatus, GenerationJob, JobStatus
from chronicle.schemas.job import JobCreate
from chronicle.services.step_machine import CREATED
from chronicle.utils.logging import get_logger

log = get_logger(__name__)


class JobService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = require_session_factory(session_factory)

    async def create_job(self, request: JobCreate) -> GenerationJob:
        """Create the book and its generation job in one transaction."""
        preview = request.preview.model_dump()

        async with self.session_factory() as db, db.begin():  # type: ignore[misc]
            book = Book(
                id=uuid.uuid4(),
                title=request.preview.title,
                genre=request.genre,
                author_name=request.author_name,
                status=BookStatus.DRAFTING,
                constitution_json={},
                constitution_locked=False,
            )
            db.add(book)

            job = GenerationJob(
                id=uuid.uuid4(),
                book_id=book.id,
                genre=request.genre,
                user_prompt=request.user_prompt,
                preview=preview,
                status=JobStatus.QUEUED,
                step=str(CREATED),
                progress=0,
                attempt=0,
                auto_resume_attempts=0,
            )
            db.add(job)

        log.info(
            "job_created",
            job_id=str(job.id),
            book_id=str(book.id),
            genre=request.genre,
            target_pages=preview["target_pages"],
            mode=preview["mode"],
        )
        return job
