"""Chronicle book-generation job engine.

This package drives long-running book generation as a durable state machine:
each tick performs one unit of work (constitution, plan, one section, or
finalization) and persists the next step, so any process can resume a job
after a crash. A watchdog resumes abandoned jobs and a cleanup sweep fails
jobs that have been inactive for too long.
"""

from chronicle.database import async_session_factory, get_session
from chronicle.models import Base, Book, GenerationJob

__all__ = [
    "Base",
    "Book",
    "GenerationJob",
    "async_session_factory",
    "get_session",
]
