"""Generation job routes.

- POST /api/v1/jobs                  create a book and its queued job
- POST /api/v1/jobs/{job_id}/tick    advance a job by one step
- POST /api/v1/jobs/auto-resume      run the stuck-job watchdog (cron)
- GET  /api/v1/jobs/auto-resume      list stuck jobs without side effects (cron)
- POST /api/v1/jobs/cleanup          fail long-inactive jobs (cron)
- GET  /api/v1/health/jobs           stuck-job health for external monitoring

Cron routes require CRON_SECRET as ``x-cron-secret`` or a Bearer token when
the secret is configured.
"""

import hmac
import uuid

import structlog
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

from chronicle.config import get_cron_secret, get_max_auto_resume_attempts, get_stale_timeout_minutes
from chronicle.exceptions import JobNotFoundError
from chronicle.schemas.job import JobCreate, JobResponse
from chronicle.services.job_recovery import JobRecoveryService
from chronicle.services.job_service import JobService
from chronicle.services.step_executor import StepExecutor

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["jobs"])


def _presented_secret(request: Request) -> str:
    header = request.headers.get("x-cron-secret")
    if header:
        return header
    authorization = request.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :]
    return ""


def verify_cron_secret(request: Request) -> None:
    """Reject the request unless it carries the configured cron secret.

    Raises:
        HTTPException: 401 when CRON_SECRET is set and does not match.
    """
    secret = get_cron_secret()
    if not secret:
        return
    if not hmac.compare_digest(_presented_secret(request), secret):
        log.warning("cron_unauthorized", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate) -> JSONResponse:
    job = await JobService().create_job(payload)
    log.info("job_create_accepted", job_id=str(job.id))
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=JobResponse.model_validate(job).model_dump(mode="json"),
    )


@router.post("/jobs/auto-resume")
async def auto_resume(request: Request) -> JSONResponse:
    """Resume stuck jobs, oldest first (cron entry point)."""
    verify_cron_secret(request)
    report = await JobRecoveryService().run_watchdog_sweep()
    return JSONResponse(content=report.to_dict())


@router.get("/jobs/auto-resume")
async def list_stuck_jobs(request: Request) -> JSONResponse:
    """Stuck jobs without processing them (debugging)."""
    verify_cron_secret(request)
    jobs = await JobRecoveryService().list_stuck_jobs()
    return JSONResponse(
        content={
            "stuck_jobs": jobs,
            "count": len(jobs),
            "stale_timeout_minutes": get_stale_timeout_minutes(),
            "max_auto_resume_attempts": get_max_auto_resume_attempts(),
        }
    )


@router.post("/jobs/cleanup")
async def cleanup_jobs(request: Request) -> JSONResponse:
    verify_cron_secret(request)
    report = await JobRecoveryService().run_cleanup_sweep()
    return JSONResponse(content=report.to_dict())


@router.post("/jobs/{job_id}/tick")
async def tick_job(job_id: uuid.UUID) -> JSONResponse:
    """Advance one job by one step.

    Returns:
        200 OK: TickResult (including failed results)
        404 Not Found: Unknown job id
    """
    try:
        result = await StepExecutor(job_id).tick()
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail="Job not found") from e

    return JSONResponse(content=result.to_dict())


@router.get("/health/jobs")
async def jobs_health() -> JSONResponse:
    """Stuck-job health for uptime monitors. 503 when recovery is falling behind."""
    report = await JobRecoveryService().health_report()
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE if report.status == "critical" else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=report.to_dict())
