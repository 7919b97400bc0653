"""Book cover routes.

- POST /api/v1/books/{book_id}/cover - queue cover generation

The request only marks the cover pending and returns; generation runs as a
background task. The finalization gate reads the same cover status, so a
job waiting on this cover completes once it is ready.
"""

import uuid

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from fastapi.responses import JSONResponse

from chronicle.schemas.cover import CoverGenerateRequest
from chronicle.services.cover_service import CoverService

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/books", tags=["covers"])


@router.post("/{book_id}/cover")
async def request_cover(
    book_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    payload: CoverGenerateRequest | None = None,
) -> JSONResponse:
    """Queue cover generation for a book.

    Returns:
        202 Accepted: Generation queued
        200 OK: Cover already ready or already in progress (no-op)
        404 Not Found: Unknown book id
    """
    regenerate = payload.regenerate if payload else False
    service = CoverService()

    try:
        outcome = await service.request_cover(book_id, regenerate=regenerate)
    except LookupError as e:
        raise HTTPException(status_code=404, detail="Book not found") from e

    if outcome != "queued":
        log.info("cover_request_skipped", book_id=str(book_id), outcome=outcome)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": outcome, "book_id": str(book_id)},
        )

    background_tasks.add_task(service.generate_for_book, book_id, regenerate)
    log.info("cover_request_queued", book_id=str(book_id), regenerate=regenerate)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "queued", "book_id": str(book_id)},
    )
