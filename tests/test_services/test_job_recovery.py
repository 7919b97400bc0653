"""Tests for stuck-job detection, the watchdog and cleanup sweeps, and health.

Test Strategy:
- Real JobStore on SQLite, jobs backdated with Core updates
- Scripted executors in place of StepExecutor so sweeps can be observed
- send_alert patched to assert alerts without a webhook
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from chronicle.models import Book, CoverStatus, GenerationJob, JobStatus, utcnow
from chronicle.services.cover.pipeline import CoverPipeline
from chronicle.services.cover_service import CoverService
from chronicle.services.job_recovery import (
    CleanupReport,
    JobRecoveryService,
    WatchdogReport,
    can_auto_resume,
    get_job_status_message,
    get_minutes_since_update,
    has_exceeded_max_attempts,
    is_job_stuck,
)
from chronicle.services.step_executor import StepExecutor, TickResult
from tests.support.factories import CONSTITUTION, create_book_with_job, set_job_updated_at
from tests.support.fakes import FakeImageModel, FakeVisionModel, ScriptedTextModel


def _job(status=JobStatus.RUNNING, minutes_ago=0, attempts=0, step="plan", error=None) -> GenerationJob:
    return GenerationJob(
        id=uuid.uuid4(),
        book_id=uuid.uuid4(),
        status=status,
        step=step,
        progress=10,
        auto_resume_attempts=attempts,
        error=error,
        updated_at=utcnow() - timedelta(minutes=minutes_ago),
    )


class RecordingExecutor:
    """Stands in for StepExecutor; records which jobs were ticked."""

    def __init__(self, ticked: list[uuid.UUID], job_id: uuid.UUID, outcome=None):
        self.ticked = ticked
        self.job_id = job_id
        self.outcome = outcome

    async def tick(self):
        self.ticked.append(self.job_id)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        if self.outcome == "hang":
            await asyncio.sleep(5)
        return TickResult(
            status=self.outcome or "running",
            step="plan",
            progress=10,
            message="ok",
            error="boom" if self.outcome == "failed" else None,
        )


def _service(session_factory, ticked, outcome=None) -> JobRecoveryService:
    return JobRecoveryService(
        session_factory=session_factory,
        executor_factory=lambda job_id: RecordingExecutor(ticked, job_id, outcome),
    )


async def _stale_job(session_factory, minutes_ago, **kwargs):
    kwargs.setdefault("status", JobStatus.RUNNING)
    kwargs.setdefault("step", "plan")
    _, job_id = await create_book_with_job(session_factory, **kwargs)
    await set_job_updated_at(session_factory, job_id, minutes_ago)
    return job_id


async def _get(session_factory, job_id) -> GenerationJob:
    async with session_factory() as db:
        return await db.get(GenerationJob, job_id)


class TestPureHelpers:
    def test_stuck_after_window(self):
        assert is_job_stuck(_job(minutes_ago=6)) is True
        assert is_job_stuck(_job(minutes_ago=4)) is False

    def test_terminal_jobs_are_never_stuck(self):
        assert is_job_stuck(_job(status=JobStatus.COMPLETE, minutes_ago=600)) is False
        assert is_job_stuck(_job(status=JobStatus.FAILED, minutes_ago=600)) is False

    def test_queued_jobs_can_be_stuck(self):
        assert is_job_stuck(_job(status=JobStatus.QUEUED, minutes_ago=10)) is True

    def test_custom_window(self, monkeypatch):
        monkeypatch.setenv("STALE_TIMEOUT_MINUTES", "15")

        assert is_job_stuck(_job(minutes_ago=10)) is False

    def test_attempt_ceiling_is_inclusive(self):
        assert has_exceeded_max_attempts(_job(attempts=19)) is False
        assert has_exceeded_max_attempts(_job(attempts=20)) is True
        assert has_exceeded_max_attempts(_job(attempts=3), ceiling=3) is True

    def test_can_auto_resume(self):
        assert can_auto_resume(_job(minutes_ago=10, attempts=5)) is True
        assert can_auto_resume(_job(minutes_ago=10, attempts=20)) is False
        assert can_auto_resume(_job(minutes_ago=1)) is False

    @pytest.mark.parametrize(
        "job,message",
        [
            (_job(status=JobStatus.COMPLETE), "Completed"),
            (_job(status=JobStatus.FAILED, error="Plan has no chapters"), "Plan has no chapters"),
            (_job(status=JobStatus.FAILED), "Generation failed"),
            (_job(minutes_ago=30, attempts=20), "Generation failed after multiple attempts"),
            (_job(minutes_ago=30), "Generation appears stuck - will auto-resume shortly"),
            (_job(step="write_ch2_s0"), "Writing chapter 3, section 1..."),
            (_job(step="garbage"), "Generating..."),
        ],
    )
    def test_status_messages(self, job, message):
        assert get_job_status_message(job) == message

    def test_minutes_since_update_rounds(self):
        assert get_minutes_since_update(_job(minutes_ago=90.4)) == 90


class TestReports:
    def test_watchdog_messages(self):
        assert WatchdogReport(0, 0, 0, 0, 5).message == "No stuck jobs found"
        report = WatchdogReport(2, 1, 1, 0, 5)
        assert report.to_dict()["message"] == "Processed 2 stuck jobs"
        assert report.to_dict()["results"] == []

    def test_cleanup_messages(self):
        assert CleanupReport(0).message == "No stale jobs found"
        assert CleanupReport(3, ["a", "b", "c"]).to_dict() == {
            "message": "Cleaned 3 stale job(s)",
            "cleaned": 3,
            "job_ids": ["a", "b", "c"],
        }


class TestWatchdogSweep:
    @pytest.mark.asyncio
    async def test_no_stuck_jobs(self, session_factory):
        ticked = []
        await create_book_with_job(session_factory, status=JobStatus.RUNNING)

        report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert report.processed == 0
        assert report.message == "No stuck jobs found"
        assert ticked == []

    @pytest.mark.asyncio
    async def test_hours_old_job_is_resumed(self, session_factory):
        """
        GIVEN a running job last updated 9 hours ago
        WHEN the watchdog sweeps
        THEN it is ticked once and its resume counter goes up by one
        """
        ticked = []
        job_id = await _stale_job(session_factory, minutes_ago=9 * 60)

        report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert report.processed == 1
        assert report.succeeded == 1
        assert ticked == [job_id]
        job = await _get(session_factory, job_id)
        assert job.auto_resume_attempts == 1
        assert job.status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_ignored(self, session_factory):
        ticked = []
        await _stale_job(session_factory, 60, status=JobStatus.COMPLETE, step="complete")
        await _stale_job(session_factory, 60, status=JobStatus.FAILED)

        report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert report.processed == 0
        assert report.marked_as_failed == 0

    @pytest.mark.asyncio
    async def test_oldest_first_and_batch_limit(self, session_factory):
        ticked = []
        job_ids = [await _stale_job(session_factory, minutes_ago=100 - i) for i in range(12)]

        report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert report.processed == 10
        assert ticked == job_ids[:10]
        untouched = await _get(session_factory, job_ids[11])
        assert untouched.auto_resume_attempts == 0

    @pytest.mark.asyncio
    async def test_job_at_ceiling_is_failed_not_resumed(self, session_factory):
        ticked = []
        job_id = await _stale_job(session_factory, minutes_ago=30, auto_resume_attempts=20)

        with patch("chronicle.services.job_recovery.send_alert", new_callable=AsyncMock) as mock_alert:
            report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert ticked == []
        assert report.processed == 0
        assert report.marked_as_failed == 1
        job = await _get(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == (
            "Generation failed after 20 automatic resume attempts. Please try creating a new story."
        )
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args[0][0] == "WARNING"

    @pytest.mark.asyncio
    async def test_last_attempt_is_resumed_then_failed(self, session_factory):
        ticked = []
        job_id = await _stale_job(session_factory, minutes_ago=30, auto_resume_attempts=19)

        with patch("chronicle.services.job_recovery.send_alert", new_callable=AsyncMock):
            report = await _service(session_factory, ticked).run_watchdog_sweep()

        assert ticked == [job_id]
        assert report.marked_as_failed == 1
        job = await _get(session_factory, job_id)
        assert job.auto_resume_attempts == 20
        assert job.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_tick_is_counted(self, session_factory):
        ticked = []
        await _stale_job(session_factory, minutes_ago=30)

        report = await _service(session_factory, ticked, outcome="failed").run_watchdog_sweep()

        assert report.failed == 1
        assert report.results[0].error == "boom"

    @pytest.mark.asyncio
    async def test_one_error_does_not_abort_the_sweep(self, session_factory):
        ticked = []
        await _stale_job(session_factory, minutes_ago=40)
        await _stale_job(session_factory, minutes_ago=30)

        report = await _service(session_factory, ticked, outcome=RuntimeError("db hiccup")).run_watchdog_sweep()

        assert len(ticked) == 2
        assert report.failed == 2
        assert {r.error for r in report.results} == {"db hiccup"}

    @pytest.mark.asyncio
    async def test_tick_timeout(self, session_factory, monkeypatch):
        ticked = []
        await _stale_job(session_factory, minutes_ago=30)
        monkeypatch.setattr("chronicle.services.job_recovery.get_tick_timeout_seconds", lambda: 0.01)

        report = await _service(session_factory, ticked, outcome="hang").run_watchdog_sweep()

        assert report.failed == 1
        assert report.results[0].error == "Tick timed out after 0.01s"

    @pytest.mark.asyncio
    async def test_default_executor_ticks_real_job(self, session_factory):
        job_id = await _stale_job(
            session_factory, minutes_ago=30, status=JobStatus.COMPLETE, step="complete", progress=100
        )
        service = JobRecoveryService(session_factory=session_factory)

        executor = service.executor_factory(job_id)
        result = await executor.tick()

        assert result.message == "Book generation already complete"


class TestWatchdogCoverRegeneration:
    """Real ticks at finalize, with an image model slower than the tick budget."""

    @pytest.fixture
    def image_model(self):
        return FakeImageModel(delay=5)

    @pytest.fixture
    def recovery(self, session_factory, image_model, workspace):
        pipeline = CoverPipeline(
            text_model=ScriptedTextModel.for_book(),
            image_model=image_model,
            vision_model=FakeVisionModel(),
        )
        cover_service = CoverService(pipeline=pipeline, session_factory=session_factory)
        return JobRecoveryService(
            session_factory=session_factory,
            executor_factory=lambda job_id: StepExecutor(
                job_id, cover_service=cover_service, session_factory=session_factory
            ),
        )

    async def _finalizing_job(self, session_factory):
        return await _stale_job(
            session_factory,
            minutes_ago=30,
            step="finalize",
            progress=97,
            constitution=CONSTITUTION,
            cover_status=CoverStatus.FAILED,
            cover_attempts=1,
        )

    async def _cover(self, session_factory, job_id) -> Book:
        job = await _get(session_factory, job_id)
        async with session_factory() as db:
            return await db.get(Book, job.book_id)

    @pytest.mark.asyncio
    async def test_timed_out_tick_leaves_cover_failed(self, session_factory, recovery, image_model, monkeypatch):
        """
        GIVEN a finalizing job whose cover regeneration outlasts the watchdog's tick timeout
        WHEN the sweep cancels the tick
        THEN the cover is failed rather than stuck generating, and the next tick regenerates it
        """
        job_id = await self._finalizing_job(session_factory)
        monkeypatch.setattr("chronicle.services.job_recovery.get_tick_timeout_seconds", lambda: 0.3)

        report = await recovery.run_watchdog_sweep()

        assert report.failed == 1
        assert report.results[0].error == "Tick timed out after 0.3s"
        book = await self._cover(session_factory, job_id)
        assert book.cover_status == CoverStatus.FAILED
        assert book.cover_attempts == 2
        job = await _get(session_factory, job_id)
        assert job.lease_token is None

        image_model.delay = 0
        result = await recovery.executor_factory(job_id).tick()

        assert result.status == "complete"
        book = await self._cover(session_factory, job_id)
        assert book.cover_status == CoverStatus.READY
        assert book.cover_attempts == 3

    @pytest.mark.asyncio
    async def test_regeneration_gives_up_before_the_tick_does(self, session_factory, recovery, monkeypatch):
        job_id = await self._finalizing_job(session_factory)
        monkeypatch.setattr("chronicle.services.job_recovery.get_tick_timeout_seconds", lambda: 3)
        monkeypatch.setattr("chronicle.services.finalization_gate.get_tick_timeout_seconds", lambda: 1)

        report = await recovery.run_watchdog_sweep()

        assert report.succeeded == 1
        book = await self._cover(session_factory, job_id)
        assert book.cover_status == CoverStatus.FAILED
        job = await _get(session_factory, job_id)
        assert job.status == JobStatus.RUNNING
        assert job.progress == 97


class TestCleanupSweep:
    @pytest.mark.asyncio
    async def test_inactive_jobs_are_failed(self, session_factory):
        old = await _stale_job(session_factory, minutes_ago=61, auto_resume_attempts=2)
        recent = await _stale_job(session_factory, minutes_ago=30)
        done = await _stale_job(session_factory, minutes_ago=600, status=JobStatus.COMPLETE, step="complete")

        report = await _service(session_factory, []).run_cleanup_sweep()

        assert report.cleaned == 1
        assert report.job_ids == [str(old)]
        assert (await _get(session_factory, old)).error == "Job timed out after 1 hour(s) of inactivity"
        assert (await _get(session_factory, recent)).status == JobStatus.RUNNING
        assert (await _get(session_factory, done)).status == JobStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_cleanup_never_ticks(self, session_factory):
        ticked = []
        await _stale_job(session_factory, minutes_ago=9 * 60)

        await _service(session_factory, ticked).run_cleanup_sweep()

        assert ticked == []

    @pytest.mark.asyncio
    async def test_nothing_to_clean(self, session_factory):
        report = await _service(session_factory, []).run_cleanup_sweep()

        assert report.message == "No stale jobs found"


class TestListStuckJobs:
    @pytest.mark.asyncio
    async def test_lists_without_side_effects(self, session_factory):
        job_id = await _stale_job(session_factory, minutes_ago=45, auto_resume_attempts=3)
        await create_book_with_job(session_factory, status=JobStatus.RUNNING)

        jobs = await _service(session_factory, []).list_stuck_jobs()

        assert [j["id"] for j in jobs] == [str(job_id)]
        assert jobs[0]["auto_resume_attempts"] == 3
        assert jobs[0]["status"] == "running"
        assert jobs[0]["stale_minutes"] == 45
        assert (await _get(session_factory, job_id)).auto_resume_attempts == 3


class TestHealthReport:
    @pytest.mark.asyncio
    async def test_healthy(self, session_factory):
        report = await _service(session_factory, []).health_report()

        assert report.status == "healthy"
        body = report.to_dict()
        assert body["stuck_jobs"]["total"] == 0
        assert body["config"] == {"stale_timeout_minutes": 5, "max_auto_resume_attempts": 20}
        assert "message" not in body

    @pytest.mark.asyncio
    async def test_degraded_when_recoverable_jobs_are_recent(self, session_factory):
        await _stale_job(session_factory, minutes_ago=10)

        report = await _service(session_factory, []).health_report()

        assert report.status == "degraded"
        assert report.recoverable == 1

    @pytest.mark.asyncio
    async def test_critical_alerts(self, session_factory):
        await _stale_job(session_factory, minutes_ago=16)
        await _stale_job(session_factory, minutes_ago=60, auto_resume_attempts=20)

        with patch("chronicle.services.job_recovery.send_alert", new_callable=AsyncMock) as mock_alert:
            report = await _service(session_factory, []).health_report()

        assert report.status == "critical"
        assert report.total == 2
        assert report.recoverable == 1
        assert report.permanently_failed == 1
        assert report.oldest_stale_minutes == 60
        assert report.message.startswith("1 stuck job(s) not being recovered.")
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args[0][0] == "CRITICAL"

    @pytest.mark.asyncio
    async def test_only_exhausted_jobs_is_healthy(self, session_factory):
        await _stale_job(session_factory, minutes_ago=120, auto_resume_attempts=20)

        report = await _service(session_factory, []).health_report()

        assert report.status == "healthy"
        assert report.permanently_failed == 1
