"""FastAPI application for the book-generation job engine.

Exposes job creation, the tick endpoint, the recovery sweeps (for cron) and
health checks. With RUN_WATCHDOG=true the watchdog cycle also runs inside
the API process instead of as a separate worker.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from chronicle.config import get_run_watchdog_in_app
from chronicle.routes import covers, jobs
from chronicle.workers import watchdog_worker

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of the in-process watchdog loop.

    Startup:
    - Start watchdog_loop as a background task when RUN_WATCHDOG is set

    Shutdown:
    - Cancel the loop and wait for it to stop
    """
    watchdog_task = None

    if get_run_watchdog_in_app():
        log.info("starting_in_app_watchdog")
        watchdog_task = asyncio.create_task(watchdog_worker.watchdog_loop())
    else:
        log.info(
            "in_app_watchdog_disabled",
            message="RUN_WATCHDOG not set, run the watchdog worker or a cron instead",
        )

    yield  # Application runs here

    if watchdog_task:
        log.info("shutting_down_watchdog")
        watchdog_task.cancel()
        try:
            await watchdog_task
        except asyncio.CancelledError:
            log.info("watchdog_task_cancelled")


app = FastAPI(
    title="Chronicle - Book Generation Job Engine",
    description="Durable, resumable book generation with stuck-job recovery",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(jobs.router)
app.include_router(covers.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness check for deployment validation."""
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "chronicle-job-engine",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "chronicle.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
