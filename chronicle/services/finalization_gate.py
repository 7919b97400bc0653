"""Finalization gate: a job completes only once its cover is ready.

Decision table (cover status → action, progress):

    ready                 → complete     100
    generating, pending   → wait          98
    failed, absent        → regenerate    97
    anything else         → regenerate    97

Every decision is made on a value read from the database in the same tick,
never on a cached one. Completion re-checks ``ready`` inside the transaction
that marks the job complete, with the book row locked, so a job can never
ship without a cover.

A pending/generating cover older than the cover timeout is escalated to
failed (compare-and-swap) and re-read before deciding. Regeneration is
awaited, bounded by the same timeout and by a share of the tick budget so
the tick always outlives it.
"""

import asyncio
import enum
import uuid
from dataclasses import dataclass

from chronicle.config import (
    get_cover_timeout_minutes,
    get_max_cover_attempts,
    get_tick_lease_seconds,
    get_tick_timeout_seconds,
)
from chronicle.exceptions import CoverGenerationError
from chronicle.models import Book, BookStatus, CoverStatus, GenerationJob, JobStatus, utcnow
from chronicle.services.cover_service import IN_PROGRESS_STATUSES, CoverService, CoverSnapshot
from chronicle.services.job_store import JobStore
from chronicle.services.step_machine import (
    COMPLETE,
    FINALIZE,
    PROGRESS_COMPLETE,
    PROGRESS_COVER_REGENERATING,
    PROGRESS_COVER_WAITING,
    next_progress,
)
from chronicle.utils.logging import get_logger

# Share of the tick budget an awaited regeneration may use; the rest is
# left for the re-read and the completing transaction.
REGENERATION_TICK_SHARE = 0.8


class CoverAction(enum.Enum):
    COMPLETE = "complete"
    WAIT = "wait"
    REGENERATE = "regenerate"


@dataclass(frozen=True)
class CoverCompletionResult:
    can_complete: bool
    action: CoverAction
    message: str
    progress: int


def _coerce_status(status: CoverStatus | str | None) -> CoverStatus | str | None:
    if isinstance(status, str):
        try:
            return CoverStatus(status)
        except ValueError:
            return status
    return status


def get_cover_completion_action(status: CoverStatus | str | None) -> CoverCompletionResult:
    """Decide what finalization should do for a cover status."""
    status = _coerce_status(status)

    if status == CoverStatus.READY:
        return CoverCompletionResult(True, CoverAction.COMPLETE, "Cover ready, finalizing book", PROGRESS_COMPLETE)

    if status in IN_PROGRESS_STATUSES:
        return CoverCompletionResult(
            False,
            CoverAction.WAIT,
            "Waiting for cover to finish generating...",
            PROGRESS_COVER_WAITING,
        )

    if status is None or status == CoverStatus.FAILED:
        return CoverCompletionResult(
            False,
            CoverAction.REGENERATE,
            "Regenerating cover...",
            PROGRESS_COVER_REGENERATING,
        )

    return CoverCompletionResult(
        False,
        CoverAction.REGENERATE,
        "Cover status unknown, regenerating...",
        PROGRESS_COVER_REGENERATING,
    )


def can_finalize_book(status: CoverStatus | str | None) -> bool:
    return _coerce_status(status) == CoverStatus.READY


def needs_cover_regeneration(status: CoverStatus | str | None) -> bool:
    status = _coerce_status(status)
    return status is None or status == CoverStatus.FAILED


def should_wait_for_cover(status: CoverStatus | str | None) -> bool:
    return _coerce_status(status) in IN_PROGRESS_STATUSES


@dataclass
class GateOutcome:
    """What the gate did this tick."""

    action: CoverAction
    progress: int
    message: str
    completed: bool = False


class FinalizationGate:
    """Runs the finalize step for one job.

    Args:
        cover_service: Cover status reads and (re)generation.
        store: Job store used for lease-checked writes.
        cover_timeout_minutes: Budget for pending/generating covers and for
            an awaited regeneration (default COVER_TIMEOUT_MINUTES).
        max_cover_attempts: Generations a book may start before the job fails
            (default MAX_COVER_ATTEMPTS).
    """

    def __init__(
        self,
        cover_service: CoverService,
        store: JobStore,
        cover_timeout_minutes: int | None = None,
        max_cover_attempts: int | None = None,
    ):
        self.cover_service = cover_service
        self.store = store
        self.cover_timeout_minutes = cover_timeout_minutes or get_cover_timeout_minutes()
        self.max_cover_attempts = max_cover_attempts or get_max_cover_attempts()
        self.log = get_logger(__name__)

    async def _read(self, book_id: uuid.UUID) -> CoverSnapshot:
        snapshot = await self.cover_service.read_status(book_id)
        if snapshot is None:
            raise CoverGenerationError(f"Book not found: {book_id}")
        return snapshot

    def regeneration_budget_seconds(self) -> float:
        """Seconds an awaited regeneration may take within one tick."""
        return min(self.cover_timeout_minutes * 60, get_tick_timeout_seconds() * REGENERATION_TICK_SHARE)

    async def _fresh_snapshot(self, book_id: uuid.UUID) -> CoverSnapshot:
        """Read, escalate a timed-out generation, and re-read if escalated."""
        snapshot = await self._read(book_id)
        if await self.cover_service.mark_failed_if_stale(snapshot, self.cover_timeout_minutes):
            snapshot = await self._read(book_id)
        return snapshot

    async def run(self, job: GenerationJob, lease_token: str) -> GateOutcome:
        """Advance the finalize step by one decision.

        Raises:
            CoverGenerationError: If the cover attempt ceiling is reached.
            LeaseLostError: If the tick lost its lease.
        """
        log = self.log.bind(job_id=str(job.id), book_id=str(job.book_id))

        snapshot = await self._fresh_snapshot(job.book_id)
        decision = get_cover_completion_action(snapshot.status)
        log.info(
            "finalization_decision",
            cover_status=snapshot.status.value if snapshot.status else None,
            action=decision.action.value,
        )

        if decision.action is CoverAction.COMPLETE:
            return await self._complete_or_wait(job.id, job.book_id, lease_token)

        if decision.action is CoverAction.WAIT:
            return await self._hold(job.id, lease_token, decision)

        return await self._regenerate(job.id, job.book_id, lease_token, snapshot, decision)

    async def _hold(self, job_id: uuid.UUID, lease_token: str, decision: CoverCompletionResult) -> GateOutcome:
        async with self.store.leased_transaction(job_id, lease_token) as (_db, job):
            job.step = str(FINALIZE)
            job.progress = next_progress(job.progress, decision.progress)
            progress = job.progress
        return GateOutcome(decision.action, progress, decision.message)

    async def _complete_or_wait(self, job_id: uuid.UUID, book_id: uuid.UUID, lease_token: str) -> GateOutcome:
        async with self.store.leased_transaction(job_id, lease_token) as (db, job):
            book = await db.get(Book, book_id, with_for_update=True, populate_existing=True)
            if book is not None and book.cover_status == CoverStatus.READY:
                now = utcnow()
                job.status = JobStatus.COMPLETE
                job.step = str(COMPLETE)
                job.progress = PROGRESS_COMPLETE
                job.attempt = 0
                job.completed_at = now
                book.status = BookStatus.FINAL
                completed = True
            else:
                completed = False

        if completed:
            self.log.info("job_completed", job_id=str(job_id), book_id=str(book_id))
            decision = get_cover_completion_action(CoverStatus.READY)
            return GateOutcome(decision.action, PROGRESS_COMPLETE, decision.message, completed=True)

        # The cover changed between the read and the locked re-check.
        return await self._hold(job_id, lease_token, get_cover_completion_action(CoverStatus.PENDING))

    async def _regenerate(
        self,
        job_id: uuid.UUID,
        book_id: uuid.UUID,
        lease_token: str,
        snapshot: CoverSnapshot,
        decision: CoverCompletionResult,
    ) -> GateOutcome:
        log = self.log.bind(job_id=str(job_id), book_id=str(book_id))

        if snapshot.attempts >= self.max_cover_attempts:
            raise CoverGenerationError(
                f"Cover generation failed after {snapshot.attempts} attempts"
            )

        await self._hold(job_id, lease_token, decision)
        timeout_seconds = self.regeneration_budget_seconds()
        await self.store.extend_lease(job_id, lease_token, timeout_seconds + get_tick_lease_seconds())

        log.info("cover_regeneration_started", previous_attempts=snapshot.attempts)
        try:
            await asyncio.wait_for(
                self.cover_service.generate_for_book(book_id, regenerate=True),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning("cover_regeneration_timed_out", timeout_minutes=self.cover_timeout_minutes)
            current = await self._read(book_id)
            if current.status in IN_PROGRESS_STATUSES:
                await self.cover_service.mark_generation_failed(book_id, current.started_at)

        snapshot = await self._read(book_id)
        after = get_cover_completion_action(snapshot.status)
        if after.action is CoverAction.COMPLETE:
            return await self._complete_or_wait(job_id, book_id, lease_token)

        return await self._hold(job_id, lease_token, decision)
