"""Stuck-job detection and recovery.

Two sweeps run on a schedule (watchdog worker, cron route or the app's
lifespan loop):

* Watchdog: active jobs untouched for STALE_TIMEOUT_MINUTES get their
  ``auto_resume_attempts`` incremented and one tick, oldest first, at most
  MAX_JOBS_PER_RUN per sweep. Jobs that reached MAX_AUTO_RESUME_ATTEMPTS are
  failed permanently.
* Cleanup: active jobs untouched for CLEANUP_TIMEOUT_HOURS are failed.
  Cleanup never resumes anything.

The pure helpers at the top of the module are shared by the sweeps, the
health report and the job status API.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronicle.config import (
    get_cleanup_timeout_hours,
    get_max_auto_resume_attempts,
    get_max_jobs_per_run,
    get_stale_timeout_minutes,
    get_tick_timeout_seconds,
)
from chronicle.exceptions import UnknownStepError
from chronicle.models import ACTIVE_JOB_STATUSES, GenerationJob, JobStatus, ensure_utc, utcnow
from chronicle.services.job_store import JobStore
from chronicle.services.step_machine import Step, status_message
from chronicle.utils.alerts import send_alert
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

CRITICAL_STALENESS_MULTIPLIER = 3


class Tickable(Protocol):
    async def tick(self) -> Any: ...


ExecutorFactory = Callable[[uuid.UUID], Tickable]


def _minutes_since(job: GenerationJob, now: datetime) -> float:
    updated_at = ensure_utc(job.updated_at)
    if updated_at is None:
        return 0.0
    return (now - updated_at).total_seconds() / 60


def is_job_stuck(job: GenerationJob, now: datetime | None = None, stale_minutes: int | None = None) -> bool:
    """True for an active job not updated for longer than the staleness window."""
    if job.status not in ACTIVE_JOB_STATUSES:
        return False
    window = stale_minutes or get_stale_timeout_minutes()
    return _minutes_since(job, now or utcnow()) > window


def has_exceeded_max_attempts(job: GenerationJob, ceiling: int | None = None) -> bool:
    return (job.auto_resume_attempts or 0) >= (ceiling or get_max_auto_resume_attempts())


def can_auto_resume(job: GenerationJob, now: datetime | None = None) -> bool:
    """Stuck, but still below the automatic resume ceiling."""
    return is_job_stuck(job, now) and not has_exceeded_max_attempts(job)


def get_job_status_message(job: GenerationJob, now: datetime | None = None) -> str:
    """Human-readable status for a job."""
    if job.status == JobStatus.COMPLETE:
        return "Completed"
    if job.status == JobStatus.FAILED:
        return job.error or "Generation failed"

    if is_job_stuck(job, now):
        if has_exceeded_max_attempts(job):
            return "Generation failed after multiple attempts"
        return "Generation appears stuck - will auto-resume shortly"

    try:
        return status_message(Step.parse(job.step))
    except UnknownStepError:
        return "Generating..."


def get_minutes_since_update(job: GenerationJob, now: datetime | None = None) -> int:
    return round(_minutes_since(job, now or utcnow()))


@dataclass
class ResumeResult:
    job_id: str
    success: bool
    error: str | None = None


@dataclass
class WatchdogReport:
    processed: int
    succeeded: int
    failed: int
    marked_as_failed: int
    duration_ms: int
    results: list[ResumeResult] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.processed == 0:
            return "No stuck jobs found"
        return f"Processed {self.processed} stuck jobs"

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, **asdict(self)}


@dataclass
class CleanupReport:
    cleaned: int
    job_ids: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.cleaned == 0:
            return "No stale jobs found"
        return f"Cleaned {self.cleaned} stale job(s)"

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, **asdict(self)}


@dataclass
class HealthReport:
    status: str
    timestamp: str
    total: int
    recoverable: int
    permanently_failed: int
    oldest_stale_minutes: int
    stale_timeout_minutes: int
    max_auto_resume_attempts: int
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "timestamp": self.timestamp,
            "stuck_jobs": {
                "total": self.total,
                "recoverable": self.recoverable,
                "permanently_failed": self.permanently_failed,
                "oldest_stale_minutes": self.oldest_stale_minutes,
            },
            "config": {
                "stale_timeout_minutes": self.stale_timeout_minutes,
                "max_auto_resume_attempts": self.max_auto_resume_attempts,
            },
        }
        if self.message:
            body["message"] = self.message
        return body


def _default_executor_factory(
    session_factory: async_sessionmaker[AsyncSession] | None,
) -> ExecutorFactory:
    def factory(job_id: uuid.UUID) -> Tickable:
        from chronicle.services.step_executor import StepExecutor

        return StepExecutor(job_id, session_factory=session_factory)

    return factory


class JobRecoveryService:
    """Watchdog, cleanup and health reporting over the job store.

    Args:
        session_factory: Session factory (defaults to the configured database).
        executor_factory: Builds the tick executor for a job id.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        executor_factory: ExecutorFactory | None = None,
    ):
        self.store = JobStore(session_factory)
        self.executor_factory = executor_factory or _default_executor_factory(self.store.session_factory)

    async def _resume(self, job: GenerationJob, tick_timeout: int) -> ResumeResult:
        job_id = str(job.id)
        try:
            attempts = await self.store.increment_auto_resume_attempts(job.id)
            log.info(
                "job_auto_resume_started",
                job_id=job_id,
                step=job.step,
                auto_resume_attempts=attempts,
            )

            executor = self.executor_factory(job.id)
            result = await asyncio.wait_for(executor.tick(), timeout=tick_timeout)

            status = getattr(result, "status", None)
            if status == JobStatus.FAILED.value:
                error = getattr(result, "error", None) or "Tick failed"
                log.warning("job_auto_resume_tick_failed", job_id=job_id, error=error)
                return ResumeResult(job_id=job_id, success=False, error=error)

            log.info(
                "job_auto_resume_tick_succeeded",
                job_id=job_id,
                status=status,
                step=getattr(result, "step", None),
            )
            return ResumeResult(job_id=job_id, success=True)

        except asyncio.TimeoutError:
            log.warning("job_auto_resume_tick_timed_out", job_id=job_id, timeout_seconds=tick_timeout)
            return ResumeResult(job_id=job_id, success=False, error=f"Tick timed out after {tick_timeout}s")

        except Exception as e:
            log.error(
                "job_auto_resume_error",
                job_id=job_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return ResumeResult(job_id=job_id, success=False, error=str(e) or "Unknown error")

    async def _fail_exhausted(self, ceiling: int) -> list[str]:
        exhausted = await self.store.list_exhausted(ceiling)
        error = (
            f"Generation failed after {ceiling} automatic resume attempts. "
            "Please try creating a new story."
        )

        failed_ids: list[str] = []
        for job in exhausted:
            if await self.store.mark_failed(job.id, error):
                failed_ids.append(str(job.id))

        if failed_ids:
            log.warning("jobs_permanently_failed", count=len(failed_ids), job_ids=failed_ids)
            await send_alert(
                "WARNING",
                f"{len(failed_ids)} generation job(s) failed after {ceiling} automatic resume attempts",
                {"job_ids": ", ".join(failed_ids[:10])},
            )
        return failed_ids

    async def run_watchdog_sweep(self) -> WatchdogReport:
        """Resume stuck jobs and fail those past the resume ceiling.

        One job's failure never aborts the sweep.
        """
        start = time.perf_counter()
        stale_minutes = get_stale_timeout_minutes()
        ceiling = get_max_auto_resume_attempts()
        tick_timeout = get_tick_timeout_seconds()

        cutoff = utcnow() - timedelta(minutes=stale_minutes)
        stuck = await self.store.list_stale(
            older_than=cutoff,
            attempts_below=ceiling,
            limit=get_max_jobs_per_run(),
        )

        if stuck:
            now = utcnow()
            log.info(
                "stuck_jobs_found",
                count=len(stuck),
                jobs=[
                    {
                        "id": str(job.id),
                        "step": job.step,
                        "attempts": job.auto_resume_attempts,
                        "stale_minutes": get_minutes_since_update(job, now),
                    }
                    for job in stuck
                ],
            )

        results = [await self._resume(job, tick_timeout) for job in stuck]
        marked = await self._fail_exhausted(ceiling)

        succeeded = sum(1 for r in results if r.success)
        report = WatchdogReport(
            processed=len(stuck),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            marked_as_failed=len(marked),
            duration_ms=int((time.perf_counter() - start) * 1000),
            results=results,
        )
        log.info(
            "watchdog_sweep_completed",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            marked_as_failed=report.marked_as_failed,
            duration_ms=report.duration_ms,
        )
        return report

    async def run_cleanup_sweep(self) -> CleanupReport:
        """Fail every active job inactive for longer than the cleanup window."""
        hours = get_cleanup_timeout_hours()
        inactive = await self.store.list_inactive(utcnow() - timedelta(hours=hours))
        error = f"Job timed out after {hours} hour(s) of inactivity"

        cleaned: list[str] = []
        for job in inactive:
            if await self.store.mark_failed(job.id, error):
                cleaned.append(str(job.id))

        if cleaned:
            log.warning("stale_jobs_cleaned", count=len(cleaned), job_ids=cleaned)
        return CleanupReport(cleaned=len(cleaned), job_ids=cleaned)

    async def list_stuck_jobs(self) -> list[dict[str, Any]]:
        """Active jobs past the staleness window, without side effects."""
        now = utcnow()
        jobs = await self.store.list_inactive(now - timedelta(minutes=get_stale_timeout_minutes()))
        return [
            {
                "id": str(job.id),
                "book_id": str(job.book_id),
                "status": job.status.value,
                "step": job.step,
                "progress": job.progress,
                "auto_resume_attempts": job.auto_resume_attempts,
                "updated_at": ensure_utc(job.updated_at).isoformat() if job.updated_at else None,
                "created_at": ensure_utc(job.created_at).isoformat() if job.created_at else None,
                "stale_minutes": get_minutes_since_update(job, now),
            }
            for job in jobs
        ]

    async def health_report(self) -> HealthReport:
        """Summarize stuck jobs.

        critical: recoverable stuck jobs exist and the oldest is more than
        three staleness windows old, meaning the watchdog is not keeping up.
        """
        now = utcnow()
        stale_minutes = get_stale_timeout_minutes()
        ceiling = get_max_auto_resume_attempts()

        stuck = await self.store.list_inactive(now - timedelta(minutes=stale_minutes))
        recoverable = [job for job in stuck if not has_exceeded_max_attempts(job, ceiling)]
        oldest = get_minutes_since_update(stuck[0], now) if stuck else 0

        report = HealthReport(
            status="healthy" if not recoverable else "degraded",
            timestamp=now.isoformat(),
            total=len(stuck),
            recoverable=len(recoverable),
            permanently_failed=len(stuck) - len(recoverable),
            oldest_stale_minutes=oldest,
            stale_timeout_minutes=stale_minutes,
            max_auto_resume_attempts=ceiling,
        )

        if recoverable and oldest > stale_minutes * CRITICAL_STALENESS_MULTIPLIER:
            report.status = "critical"
            report.message = (
                f"{len(recoverable)} stuck job(s) not being recovered. "
                f"Oldest: {oldest} minutes stale."
            )
            log.error("job_health_critical", recoverable=len(recoverable), oldest_stale_minutes=oldest)
            await send_alert("CRITICAL", report.message, {"recoverable": len(recoverable)})

        return report
