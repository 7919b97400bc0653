"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration,
session factory, and FastAPI dependency injection for database sessions.

Ticks, sweeps and the cover service never hold a session across an external
call: they open short transactions with the factory below instead.

Usage:
    from chronicle.database import async_session_factory

    async with async_session_factory() as db, db.begin():
        job = await db.get(GenerationJob, job_id)
        ...
"""

import os
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from chronicle.config import get_database_url

# Check if DATABASE_URL is available (may not be during import in tests)
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    # Production: Create engine with configured pool
    engine = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    # Development/Testing: Defer engine creation
    engine = None  # type: ignore[assignment]


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
    )
    if engine
    else None
)


def require_session_factory(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Return the given factory, or the module factory when none is given.

    Services accept an optional factory so tests can inject an in-memory
    engine; production code relies on the module-level default.

    Raises:
        RuntimeError: If no factory is given and DATABASE_URL is not set.
    """
    factory = session_factory or async_session_factory
    if factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database session injection.

    Yields an async database session with automatic commit on success
    and rollback on exception.

    Yields:
        AsyncSession: Database session for the request.

    Raises:
        RuntimeError: If database is not configured.
    """
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple["AsyncEngine", async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite uses StaticPool so every session sees the same database.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    engine_kwargs: dict = {"echo": False}
    if database_url.endswith(":memory:"):
        engine_kwargs["poolclass"] = StaticPool
        engine_kwargs["connect_args"] = {"check_same_thread": False}

    test_engine = create_async_engine(database_url, **engine_kwargs)
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
