"""Job worker: drive one generation job to a terminal status.

Ticks the job repeatedly. A tick that did not move the job (the lease is
held elsewhere, or finalization is waiting for the cover) is followed by a
pause before the next one.

Usage:
    python -m chronicle.workers.job_worker --job-id <uuid>
"""

import argparse
import asyncio
import signal
import sys
import uuid

from chronicle.exceptions import JobNotFoundError
from chronicle.models import JobStatus
from chronicle.services.step_executor import StepExecutor, TickResult
from chronicle.utils.logging import get_logger
from chronicle.workers.watchdog_worker import shutdown_worker

log = get_logger(__name__)

shutdown_requested = False

WAIT_SECONDS = 5
TERMINAL_STATUSES = (JobStatus.COMPLETE.value, JobStatus.FAILED.value)


def signal_handler(signum: int, frame: object) -> None:
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def run_job(
    job_id: uuid.UUID,
    executor: StepExecutor | None = None,
    wait_seconds: float = WAIT_SECONDS,
    max_ticks: int | None = None,
) -> TickResult | None:
    """Tick ``job_id`` until it is complete or failed.

    Returns:
        The last tick result, or None if shutdown came before the first tick.

    Raises:
        JobNotFoundError: If the job does not exist.
    """
    executor = executor or StepExecutor(job_id)
    log.info("job_worker_started", job_id=str(job_id))

    result: TickResult | None = None
    ticks = 0
    while not shutdown_requested:
        previous = result
        result = await executor.tick()
        ticks += 1

        if result.status in TERMINAL_STATUSES:
            break
        if max_ticks is not None and ticks >= max_ticks:
            break

        unchanged = previous is not None and (previous.step, previous.progress) == (result.step, result.progress)
        if unchanged:
            log.info("job_waiting", job_id=str(job_id), step=result.step, message=result.message)
            await asyncio.sleep(wait_seconds)

    if result is not None:
        log.info(
            "job_worker_finished",
            job_id=str(job_id),
            status=result.status,
            step=result.step,
            progress=result.progress,
            ticks=ticks,
        )
    return result


async def _run(job_id: uuid.UUID) -> TickResult | None:
    try:
        return await run_job(job_id)
    finally:
        await shutdown_worker()


def main(argv: list[str] | None = None) -> None:
    """Exit Codes:
        0: Job complete (or shutdown requested)
        1: Job failed, not found, or fatal error
    """
    parser = argparse.ArgumentParser(description="Run one generation job to completion.")
    parser.add_argument("--job-id", required=True, type=uuid.UUID, help="Generation job id")
    args = parser.parse_args(argv)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        result = asyncio.run(_run(args.job_id))
    except JobNotFoundError:
        log.error("job_not_found", job_id=str(args.job_id))
        sys.exit(1)
    except Exception as e:
        log.error("worker_fatal_error", error_type=type(e).__name__, error_message=str(e))
        sys.exit(1)

    if result is not None and result.status == JobStatus.FAILED.value:
        sys.exit(1)


if __name__ == "__main__":
    main()
