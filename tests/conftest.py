"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing services against an
in-memory SQLite database, plus environment isolation for the settings that
change behaviour (webhooks, cron secret, workspace).
"""

import pytest
import pytest_asyncio

from chronicle.database import create_test_engine
from chronicle.models import Base


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Keep real webhooks and secrets out of every test."""
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("RUN_WATCHDOG", raising=False)


@pytest_asyncio.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory database.

    Creates all tables before yielding, disposes the engine after.

    Yields:
        async_sessionmaker[AsyncSession]: Factory with expire_on_commit=False.
    """
    engine, factory = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point generated cover files at a temporary directory."""
    monkeypatch.setattr("chronicle.utils.filesystem.WORKSPACE_ROOT", tmp_path)
    return tmp_path
