"""Watchdog worker: resumes stuck jobs and cleans up abandoned ones.

Runs the stuck-job watchdog sweep followed by the cleanup sweep every
WATCHDOG_INTERVAL_SECONDS. The same cycle can run inside the API process
(RUN_WATCHDOG=true) or be triggered by a cron hitting the sweep routes.

Architecture Pattern:
    - Separate Process: independent of the API service
    - Short Transactions: every sweep step opens its own transaction
    - Graceful Shutdown: SIGTERM/SIGINT finish the current cycle, then exit

Usage:
    python -m chronicle.workers.watchdog_worker
    python -m chronicle.workers.watchdog_worker --once
"""

import argparse
import asyncio
import signal
import sys

from chronicle.config import get_watchdog_interval_seconds
from chronicle.database import engine
from chronicle.services.job_recovery import JobRecoveryService
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False

ERROR_BACKOFF_SECONDS = 5


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT by letting the current cycle finish."""
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def run_recovery_cycle(service: JobRecoveryService) -> None:
    """One watchdog sweep followed by one cleanup sweep."""
    watchdog = await service.run_watchdog_sweep()
    cleanup = await service.run_cleanup_sweep()
    log.info(
        "recovery_cycle_completed",
        processed=watchdog.processed,
        succeeded=watchdog.succeeded,
        failed=watchdog.failed,
        marked_as_failed=watchdog.marked_as_failed,
        cleaned=cleanup.cleaned,
    )


async def _sleep_unless_shutdown(seconds: int) -> None:
    for _ in range(seconds):
        if shutdown_requested:
            return
        await asyncio.sleep(1)


async def watchdog_loop(service: JobRecoveryService | None = None, once: bool = False) -> None:
    """Run recovery cycles until shutdown is requested.

    Errors in a cycle are logged and retried after a short backoff; the loop
    itself never dies on a sweep failure.
    """
    service = service or JobRecoveryService()
    interval = get_watchdog_interval_seconds()
    log.info("watchdog_worker_started", interval_seconds=interval, once=once)

    while not shutdown_requested:
        try:
            await run_recovery_cycle(service)
        except Exception as e:
            log.error(
                "recovery_cycle_error",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            if once:
                raise
            await _sleep_unless_shutdown(ERROR_BACKOFF_SECONDS)
            continue

        if once:
            break
        await _sleep_unless_shutdown(interval)

    log.info("watchdog_worker_stopped")


async def shutdown_worker() -> None:
    """Dispose of the database engine so no connections leak on exit."""
    if engine:
        await engine.dispose()
        log.info("sqlalchemy_engine_closed")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resume stuck generation jobs and clean up abandoned ones.")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    return parser.parse_args(argv)


async def _run(once: bool) -> None:
    try:
        await watchdog_loop(once=once)
    finally:
        await shutdown_worker()


def main(argv: list[str] | None = None) -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown
        1: Fatal error (for example DATABASE_URL not set)
    """
    args = parse_args(argv)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(_run(args.once))
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error_type=type(e).__name__, error_message=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
