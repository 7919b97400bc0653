"""Configuration management for the job engine.

This module provides centralized configuration loading from environment variables.
Values that never change at runtime are cached with lru_cache; tunables are read
on each call so tests can override them with monkeypatch.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    STALE_TIMEOUT_MINUTES: Watchdog staleness window (default: 5)
    MAX_AUTO_RESUME_ATTEMPTS: Watchdog retry ceiling per job (default: 20)
    MAX_JOBS_PER_RUN: Watchdog batch size (default: 10)
    CLEANUP_TIMEOUT_HOURS: Cleanup sweep inactivity window (default: 1)
    COVER_TIMEOUT_MINUTES: Finalization gate cover wait budget (default: 10)
    ANTHROPIC_API_KEY / GOOGLE_API_KEY: Collaborator credentials

Usage:
    from chronicle.config import get_stale_timeout_minutes, get_database_url

    window = get_stale_timeout_minutes()  # 5 unless overridden
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

# Job recovery defaults
DEFAULT_STALE_TIMEOUT_MINUTES = 5
DEFAULT_MAX_AUTO_RESUME_ATTEMPTS = 20
DEFAULT_MAX_JOBS_PER_RUN = 10
DEFAULT_CLEANUP_TIMEOUT_HOURS = 1

# Finalization defaults
DEFAULT_COVER_TIMEOUT_MINUTES = 10
DEFAULT_MAX_COVER_ATTEMPTS = 5

# Tick defaults
DEFAULT_MAX_CONSISTENCY_RETRIES = 3
DEFAULT_TICK_LEASE_SECONDS = 600
DEFAULT_TICK_TIMEOUT_SECONDS = 300
DEFAULT_WATCHDOG_INTERVAL_SECONDS = 300

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_GEMINI_TEXT_MODEL = "gemini-2.0-flash"
DEFAULT_GEMINI_IMAGE_MODEL = "gemini-2.0-flash-exp"


def _get_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer setting, clamped to [minimum, maximum].

    Invalid values fall back to the default with a warning instead of
    failing the caller, matching how polling intervals are handled.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_int_setting", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_stale_timeout_minutes() -> int:
    """Get the watchdog staleness window in minutes.

    A running/queued job whose updated_at is older than this window is
    considered stuck and becomes eligible for an automatic resume.

    Environment Variable:
        STALE_TIMEOUT_MINUTES: Minutes of inactivity (default: 5, range 1-60)

    Returns:
        Staleness window in minutes.
    """
    return _get_int("STALE_TIMEOUT_MINUTES", DEFAULT_STALE_TIMEOUT_MINUTES, 1, 60)


def get_max_auto_resume_attempts() -> int:
    """Get the ceiling on watchdog resume attempts per job.

    Environment Variable:
        MAX_AUTO_RESUME_ATTEMPTS: Ceiling (default: 20, range 1-100)

    Returns:
        Maximum automatic resume attempts before a job is failed permanently.
    """
    return _get_int("MAX_AUTO_RESUME_ATTEMPTS", DEFAULT_MAX_AUTO_RESUME_ATTEMPTS, 1, 100)


def get_max_jobs_per_run() -> int:
    """Get the watchdog batch size.

    Environment Variable:
        MAX_JOBS_PER_RUN: Jobs resumed per sweep (default: 10, range 1-100)
    """
    return _get_int("MAX_JOBS_PER_RUN", DEFAULT_MAX_JOBS_PER_RUN, 1, 100)


def get_cleanup_timeout_hours() -> int:
    """Get the cleanup sweep inactivity window in hours.

    Environment Variable:
        CLEANUP_TIMEOUT_HOURS: Hours of inactivity (default: 1, range 1-72)
    """
    return _get_int("CLEANUP_TIMEOUT_HOURS", DEFAULT_CLEANUP_TIMEOUT_HOURS, 1, 72)


def get_cover_timeout_minutes() -> int:
    """Get how long cover generation may stay pending/generating.

    After this window the finalization gate marks the cover failed and
    regenerates it. The same value bounds an awaited regeneration.

    Environment Variable:
        COVER_TIMEOUT_MINUTES: Minutes (default: 10, range 1-60)
    """
    return _get_int("COVER_TIMEOUT_MINUTES", DEFAULT_COVER_TIMEOUT_MINUTES, 1, 60)


def get_max_cover_attempts() -> int:
    """Get how many cover generations a book may start before the job fails.

    Environment Variable:
        MAX_COVER_ATTEMPTS: Attempts (default: 5, range 1-20)
    """
    return _get_int("MAX_COVER_ATTEMPTS", DEFAULT_MAX_COVER_ATTEMPTS, 1, 20)


def get_max_consistency_retries() -> int:
    """Get the in-step rewrite ceiling used by writing steps.

    Environment Variable:
        MAX_CONSISTENCY_RETRIES: Ceiling (default: 3, range 0-10)
    """
    return _get_int("MAX_CONSISTENCY_RETRIES", DEFAULT_MAX_CONSISTENCY_RETRIES, 0, 10)


def get_tick_lease_seconds() -> int:
    """Get the per-job tick lease duration.

    The lease must outlive a normal tick; when a tick crashes the lease
    simply expires and the next tick can claim the job.

    Environment Variable:
        TICK_LEASE_SECONDS: Seconds (default: 600, range 60-3600)
    """
    return _get_int("TICK_LEASE_SECONDS", DEFAULT_TICK_LEASE_SECONDS, 60, 3600)


def get_tick_timeout_seconds() -> int:
    """Get the wall-clock budget for one tick started by the watchdog.

    Environment Variable:
        TICK_TIMEOUT_SECONDS: Seconds (default: 300, range 30-1800)
    """
    return _get_int("TICK_TIMEOUT_SECONDS", DEFAULT_TICK_TIMEOUT_SECONDS, 30, 1800)


def get_watchdog_interval_seconds() -> int:
    """Get the delay between watchdog sweeps in the worker loop.

    Environment Variable:
        WATCHDOG_INTERVAL_SECONDS: Seconds (default: 300, range 30-3600)
    """
    return _get_int("WATCHDOG_INTERVAL_SECONDS", DEFAULT_WATCHDOG_INTERVAL_SECONDS, 30, 3600)


def get_anthropic_api_key() -> str | None:
    """Get Anthropic API key from environment.

    Returns:
        API key string, or None if not set. AnthropicClient raises
        ConfigurationError when constructed without one.
    """
    return os.getenv("ANTHROPIC_API_KEY")


def get_anthropic_model() -> str:
    """Get the Anthropic model used for constitution, planning and prose."""
    return os.getenv("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL)


def get_google_api_key() -> str | None:
    """Get Google API key (Gemini text, image and vision) from environment."""
    return os.getenv("GOOGLE_API_KEY")


def get_gemini_text_model() -> str:
    """Get the Gemini model used for concept distillation and vision checks."""
    return os.getenv("GEMINI_TEXT_MODEL", DEFAULT_GEMINI_TEXT_MODEL)


def get_gemini_image_model() -> str:
    """Get the Gemini model used for image synthesis."""
    return os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_GEMINI_IMAGE_MODEL)


def get_workspace_root() -> str:
    """Get workspace root directory from environment.

    Environment Variable:
        WORKSPACE_ROOT: Base path for generated files (default: "/app/workspace")

    Returns:
        Directory path string.
    """
    return os.getenv("WORKSPACE_ROOT", "/app/workspace")


def get_cron_secret() -> str | None:
    """Get the shared secret that guards the sweep routes.

    Returns:
        Secret string, or None when the routes are left open (local use).
    """
    return os.getenv("CRON_SECRET") or None


def get_run_watchdog_in_app() -> bool:
    """Whether the FastAPI lifespan should run the watchdog loop in-process.

    Environment Variable:
        RUN_WATCHDOG: "true" to enable (default: disabled)
    """
    return os.getenv("RUN_WATCHDOG", "").lower() == "true"
