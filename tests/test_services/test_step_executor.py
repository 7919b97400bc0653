"""Tests for StepExecutor ticks against an in-memory database.

Tests cover:
- A full run from ``created`` to ``complete`` one tick at a time
- Cover started in the background after the constitution
- Tick lease: a held lease skips the tick, an expired one is taken over
- Terminal jobs, missing jobs and failures (job marked failed, lease cleared)
- Idempotent re-entry into constitution, plan and write steps
- Consistency rewrite and polished mode
- Previous-section context ordering

Test Strategy:
- Real JobStore / CoverService / FinalizationGate on SQLite
- Scripted text, image and vision collaborators (tests/support/fakes.py)
"""

import json
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from chronicle.exceptions import JobNotFoundError
from chronicle.models import (
    Book,
    BookStatus,
    Chapter,
    CoverStatus,
    GenerationJob,
    JobStatus,
    Section,
    UnitStatus,
    utcnow,
)
from chronicle.services import step_executor
from chronicle.services.cover.pipeline import CoverPipeline
from chronicle.services.cover_service import CoverService
from chronicle.services.step_executor import (
    TICK_IN_PROGRESS_MESSAGE,
    StepExecutor,
    TickResult,
    launch_in_background,
)
from chronicle.services.step_machine import Step, StepKind
from tests.support.factories import (
    CONSTITUTION,
    build_preview,
    create_book_with_job,
    create_outline,
)
from tests.support.fakes import (
    FakeImageModel,
    FakeVisionModel,
    ScriptedTextModel,
    consistency_json,
    plan_json,
    section_json,
)


@pytest.fixture
def text_model():
    return ScriptedTextModel.for_book(outline=[1, 1])


@pytest.fixture
def launched():
    """Background coroutines the executor started; tests await them explicitly."""
    coroutines = []
    yield coroutines
    for coroutine in coroutines:
        coroutine.close()


@pytest.fixture
def make_executor(session_factory, text_model, workspace, launched):
    def _make(job_id, model=None):
        model = model or text_model
        pipeline = CoverPipeline(
            text_model=model,
            image_model=FakeImageModel(),
            vision_model=FakeVisionModel(),
        )
        cover_service = CoverService(pipeline=pipeline, session_factory=session_factory)
        return StepExecutor(
            job_id,
            text_model=model,
            cover_service=cover_service,
            session_factory=session_factory,
            launch=launched.append,
        )

    return _make


async def _job(session_factory, job_id) -> GenerationJob:
    async with session_factory() as db:
        return await db.get(GenerationJob, job_id)


async def _book(session_factory, book_id) -> Book:
    async with session_factory() as db:
        return await db.get(Book, book_id)


async def _sections(session_factory, book_id) -> list[Section]:
    async with session_factory() as db:
        result = await db.execute(
            select(Section)
            .join(Chapter, Section.chapter_id == Chapter.id)
            .where(Chapter.book_id == book_id)
            .order_by(Chapter.index, Section.index)
        )
        return list(result.scalars().all())


async def _chapters(session_factory, book_id) -> list[Chapter]:
    async with session_factory() as db:
        result = await db.execute(
            select(Chapter).where(Chapter.book_id == book_id).order_by(Chapter.index)
        )
        return list(result.scalars().all())


async def _set_lease(session_factory, job_id, token, expires_in_seconds):
    async with session_factory() as db, db.begin():
        await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(
                lease_token=token,
                lease_expires_at=utcnow() + timedelta(seconds=expires_in_seconds),
            )
        )


class TestFullRun:
    @pytest.mark.asyncio
    async def test_ticks_from_created_to_complete(
        self, session_factory, make_executor, text_model, workspace, launched
    ):
        """
        GIVEN a queued job for a two-chapter, one-section-each book
        WHEN ticks run until the job stops advancing
        THEN the job completes at 100 with every unit promoted and a ready cover
        """
        book_id, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id)

        results = [await executor.tick()]
        assert (await _book(session_factory, book_id)).cover_status == CoverStatus.PENDING
        assert len(launched) == 1
        await launched.pop()
        results += [await executor.tick() for _ in range(4)]

        assert [(r.step, r.progress) for r in results] == [
            ("plan", 10),
            ("write_ch0_s0", 15),
            ("write_ch1_s0", 55),
            ("finalize", 95),
            ("complete", 100),
        ]
        assert results[0].message == "Constitution generated. Next: planning chapters."
        assert results[1].message == "Plan created: 2 chapters. Next: writing sections."
        assert results[2].message == "Wrote Chapter 1 - Section 1. Progress: 55%"
        assert results[-1].message == "Book generation complete!"
        assert results[-1].status == "complete"

        job = await _job(session_factory, job_id)
        assert job.status == JobStatus.COMPLETE
        assert job.step == "complete"
        assert job.progress == 100
        assert job.lease_token is None
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.story_synopsis == "Ada starts counting."

        sections = await _sections(session_factory, book_id)
        assert [s.status for s in sections] == [UnitStatus.CANONICAL, UnitStatus.CANONICAL]
        assert all(s.content_text == "Rain on the lamp glass." for s in sections)
        assert all(s.promoted_at is not None for s in sections)

        chapters = await _chapters(session_factory, book_id)
        assert [c.status for c in chapters] == [UnitStatus.LOCKED, UnitStatus.LOCKED]

        book = await _book(session_factory, book_id)
        assert book.status == BookStatus.FINAL
        assert book.constitution_locked is True
        assert book.constitution_json == CONSTITUTION
        assert book.cover_status == CoverStatus.READY
        assert (workspace / book.cover_path).is_file()

        assert book.cover_attempts == 1
        assert text_model.kinds() == [
            "constitution",
            "concept",
            "plan",
            "write",
            "consistency",
            "write",
            "consistency",
        ]

    @pytest.mark.asyncio
    async def test_sections_are_written_and_promoted_in_outline_order(self, session_factory, make_executor):
        """
        GIVEN a two-chapter, two-section book
        WHEN ticks run up to finalize
        THEN sections are created and promoted in (chapter, section) order
        """
        model = ScriptedTextModel.for_book(outline=[2, 2])
        book_id, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id, model)

        results = [await executor.tick() for _ in range(6)]

        assert [r.step for r in results] == [
            "plan",
            "write_ch0_s0",
            "write_ch0_s1",
            "write_ch1_s0",
            "write_ch1_s1",
            "finalize",
        ]
        sections = await _sections(session_factory, book_id)
        assert len(sections) == 4
        assert all(s.status == UnitStatus.CANONICAL for s in sections)
        promoted = [s.promoted_at for s in sections]
        created = [s.created_at for s in sections]
        assert promoted == sorted(promoted)
        assert created == sorted(created)

    @pytest.mark.asyncio
    async def test_tick_after_complete_is_a_no_op(self, session_factory, make_executor, text_model):
        _, job_id = await create_book_with_job(
            session_factory, status=JobStatus.COMPLETE, step="complete", progress=100
        )

        result = await make_executor(job_id).tick()

        assert result.status == "complete"
        assert result.progress == 100
        assert result.message == "Book generation already complete"
        assert text_model.calls == []

    @pytest.mark.asyncio
    async def test_tick_result_serializes(self, session_factory, make_executor):
        book_id, job_id = await create_book_with_job(session_factory)

        result = await make_executor(job_id).tick()

        assert isinstance(result, TickResult)
        payload = result.to_dict()
        assert payload["status"] == "running"
        assert payload["book_id"] == str(book_id)
        assert payload["error"] is None


class TestEarlyCover:
    @pytest.mark.asyncio
    async def test_cover_is_started_before_writing(self, session_factory, make_executor, launched):
        """
        GIVEN a queued job
        WHEN the constitution and plan ticks run
        THEN the cover was requested once and is already in progress when writing starts
        """
        book_id, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id)

        results = [await executor.tick() for _ in range(2)]

        assert results[-1].step == "write_ch0_s0"
        assert len(launched) == 1
        book = await _book(session_factory, book_id)
        assert book.cover_status in (CoverStatus.PENDING, CoverStatus.GENERATING)
        assert book.cover_started_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cover_status", [CoverStatus.GENERATING, CoverStatus.READY])
    async def test_running_or_ready_cover_is_not_restarted(
        self, session_factory, make_executor, launched, cover_status
    ):
        book_id, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.RUNNING,
            step="constitution",
            progress=5,
            constitution=CONSTITUTION,
            cover_status=cover_status,
            cover_started_at=utcnow(),
            cover_attempts=1,
        )

        result = await make_executor(job_id).tick()

        assert result.step == "plan"
        assert launched == []
        book = await _book(session_factory, book_id)
        assert book.cover_status == cover_status

    @pytest.mark.asyncio
    async def test_finalize_waits_for_early_cover(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id)

        results = [await executor.tick() for _ in range(5)]

        assert (results[-1].step, results[-1].progress) == ("finalize", 98)
        assert "concept" not in text_model.kinds()
        book = await _book(session_factory, book_id)
        assert book.cover_status == CoverStatus.PENDING
        assert book.cover_attempts == 0

    @pytest.mark.asyncio
    async def test_cover_request_failure_does_not_fail_job(self, session_factory, make_executor, launched):
        _, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id)
        executor.cover_service.request_cover = AsyncMock(side_effect=RuntimeError("connection reset"))

        result = await executor.tick()

        assert result.status == "running"
        assert result.step == "plan"
        assert launched == []

    @pytest.mark.asyncio
    async def test_background_generation_errors_are_logged(self, session_factory, make_executor):
        _, job_id = await create_book_with_job(session_factory)
        executor = make_executor(job_id)
        executor.cover_service.generate_for_book = AsyncMock(side_effect=LookupError("Book not found"))

        await executor._generate_cover(uuid.uuid4())

        executor.cover_service.generate_for_book.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_launch_in_background_holds_task_until_done(self):
        async def _work():
            return "done"

        task = launch_in_background(_work())

        assert task in step_executor._background_tasks
        assert await task == "done"
        assert task not in step_executor._background_tasks


class TestLease:
    @pytest.mark.asyncio
    async def test_held_lease_skips_tick(self, session_factory, make_executor, text_model):
        """
        GIVEN another tick holds a live lease on the job
        WHEN a second tick runs
        THEN it reports the current state without doing any work
        """
        _, job_id = await create_book_with_job(session_factory)
        await _set_lease(session_factory, job_id, "other-tick", expires_in_seconds=300)

        result = await make_executor(job_id).tick()

        assert result.message == TICK_IN_PROGRESS_MESSAGE
        assert result.step == "created"
        assert text_model.calls == []

        job = await _job(session_factory, job_id)
        assert job.lease_token == "other-tick"
        assert job.status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, session_factory, make_executor):
        _, job_id = await create_book_with_job(session_factory)
        await _set_lease(session_factory, job_id, "crashed-tick", expires_in_seconds=-60)

        result = await make_executor(job_id).tick()

        assert result.step == "plan"
        job = await _job(session_factory, job_id)
        assert job.lease_token is None

    @pytest.mark.asyncio
    async def test_lease_released_after_tick(self, session_factory, make_executor):
        _, job_id = await create_book_with_job(session_factory)

        await make_executor(job_id).tick()

        job = await _job(session_factory, job_id)
        assert job.lease_token is None
        assert job.lease_expires_at is None


class TestTerminalAndMissing:
    @pytest.mark.asyncio
    async def test_missing_job_raises(self, session_factory, make_executor):
        with pytest.raises(JobNotFoundError):
            await make_executor("00000000-0000-0000-0000-000000000000").tick()

    @pytest.mark.asyncio
    async def test_failed_job_is_not_resumed(self, session_factory, make_executor, text_model):
        _, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.FAILED,
            step="plan",
            progress=10,
            error="Plan has no chapters",
        )

        result = await make_executor(job_id).tick()

        assert result.status == "failed"
        assert result.message == "Plan has no chapters"
        assert result.error == "Plan has no chapters"
        assert text_model.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_unparseable_constitution_fails_job(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(constitution=["I'd rather not."])
        _, job_id = await create_book_with_job(session_factory)

        result = await make_executor(job_id, model).tick()

        assert result.status == "failed"
        assert result.message == "Generation failed"
        assert "Failed to parse JSON" in result.error

        job = await _job(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert "Failed to parse JSON" in job.error
        assert job.lease_token is None
        assert job.step == "constitution"
        assert job.progress == 5

    @pytest.mark.asyncio
    async def test_incomplete_constitution_fails_job(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(constitution=[json.dumps({"central_thesis": "x"})])
        book_id, job_id = await create_book_with_job(session_factory)

        result = await make_executor(job_id, model).tick()

        assert result.status == "failed"
        assert "Invalid Constitution" in result.error
        book = await _book(session_factory, book_id)
        assert book.constitution_locked is False

    @pytest.mark.asyncio
    async def test_collaborator_error_fails_job(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(constitution=[RuntimeError("upstream 529")])
        _, job_id = await create_book_with_job(session_factory)

        result = await make_executor(job_id, model).tick()

        assert result.status == "failed"
        assert result.error == "upstream 529"

    @pytest.mark.asyncio
    async def test_empty_plan_fails_job(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(plan=["[]"])
        _, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="plan", progress=10, constitution=CONSTITUTION
        )

        result = await make_executor(job_id, model).tick()

        assert result.status == "failed"
        assert "Plan has no chapters" in result.error

    @pytest.mark.asyncio
    async def test_unknown_step_fails_job(self, session_factory, make_executor):
        _, job_id = await create_book_with_job(session_factory, status=JobStatus.RUNNING, step="outline")

        result = await make_executor(job_id).tick()

        assert result.status == "failed"
        assert "Unknown step" in result.error

    @pytest.mark.asyncio
    async def test_step_outside_outline_fails_job(self, session_factory, make_executor):
        book_id, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.RUNNING,
            step="write_ch5_s0",
            progress=40,
            constitution=CONSTITUTION,
        )
        await create_outline(session_factory, book_id, [1])

        result = await make_executor(job_id).tick()

        assert result.status == "failed"
        assert result.error == "Section not found: ch5_s0"

    @pytest.mark.asyncio
    async def test_write_without_chapters_fails_job(self, session_factory, make_executor):
        _, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )

        result = await make_executor(job_id).tick()

        assert result.error == "No chapters found"

    @pytest.mark.asyncio
    async def test_write_step_without_indices_raises(self, session_factory, make_executor):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])
        job = await _job(session_factory, job_id)

        with pytest.raises(ValueError, match="Not a section step"):
            await make_executor(job_id)._run_write(job, Step(StepKind.WRITE), "unused-token")


class TestIdempotentReentry:
    @pytest.mark.asyncio
    async def test_locked_constitution_is_not_regenerated(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="constitution", progress=5, constitution=CONSTITUTION
        )

        result = await make_executor(job_id).tick()

        assert result.step == "plan"
        assert result.progress == 10
        assert "constitution" not in text_model.kinds()
        book = await _book(session_factory, book_id)
        assert book.constitution_json == CONSTITUTION

    @pytest.mark.asyncio
    async def test_existing_chapters_are_not_replanned(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="plan", progress=10, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [2, 1, 1])

        result = await make_executor(job_id).tick()

        assert result.step == "write_ch0_s0"
        assert result.message == "Plan created: 3 chapters. Next: writing sections."
        assert text_model.calls == []
        assert len(await _chapters(session_factory, book_id)) == 3

    @pytest.mark.asyncio
    async def test_canonical_section_is_not_rewritten(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", progress=15, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [2], canonical={(0, 0)})

        result = await make_executor(job_id).tick()

        assert result.step == "write_ch0_s1"
        assert text_model.calls == []
        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "ch0 s0 text"

    @pytest.mark.asyncio
    async def test_progress_never_moves_backwards(self, session_factory, make_executor):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="plan", progress=50, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])

        result = await make_executor(job_id).tick()

        assert result.progress == 50

    @pytest.mark.asyncio
    async def test_plan_with_empty_chapters_skips_to_first_section(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(
            plan=[
                json.dumps(
                    [
                        {"title": "Prologue", "purpose": "", "sections": [{"title": "Only"}]},
                        {"title": "Main", "purpose": "", "sections": [{"title": "A"}, {"title": "B"}]},
                    ]
                )
            ]
        )
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="plan", progress=10, constitution=CONSTITUTION
        )

        result = await make_executor(job_id, model).tick()

        assert result.step == "write_ch0_s0"
        sections = await _sections(session_factory, book_id)
        assert [s.title for s in sections] == ["Only", "A", "B"]
        assert all(s.target_words == 600 for s in sections)


class TestWriting:
    @pytest.mark.asyncio
    async def test_failed_consistency_rewrites_once(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(
            consistency=[consistency_json(passed=False, issues=["Ada's name changes to Ida"])]
        )
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", progress=15, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [2])

        result = await make_executor(job_id, model).tick()

        assert model.kinds() == ["write", "consistency", "rewrite"]
        assert "Ada's name changes to Ida" in model.calls[-1].user_prompt
        assert result.step == "write_ch0_s1"
        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "Rewritten prose with rain."

        job = await _job(session_factory, job_id)
        assert job.attempt == 0

    @pytest.mark.asyncio
    async def test_failed_consistency_at_ceiling_is_accepted(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(consistency=[consistency_json(passed=False, issues=["drift"])])
        book_id, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.RUNNING,
            step="write_ch0_s0",
            progress=15,
            attempt=3,
            constitution=CONSTITUTION,
        )
        await create_outline(session_factory, book_id, [1])

        result = await make_executor(job_id, model).tick()

        assert "rewrite" not in model.kinds()
        assert result.step == "finalize"
        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "Rain on the lamp glass."

    @pytest.mark.asyncio
    async def test_empty_rewrite_keeps_original_prose(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(
            consistency=[consistency_json(passed=False, issues=["drift"])],
            rewrite=["   "],
        )
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])

        await make_executor(job_id, model).tick()

        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "Rain on the lamp glass."

    @pytest.mark.asyncio
    async def test_polished_mode_runs_polish_pass(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.RUNNING,
            step="write_ch0_s0",
            constitution=CONSTITUTION,
            preview=build_preview(mode="polished"),
        )
        await create_outline(session_factory, book_id, [1])

        await make_executor(job_id).tick()

        assert text_model.kinds() == ["write", "consistency", "polish"]
        assert "Ada: keeper who counts everything" in text_model.calls[-1].system_prompt
        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "Polished prose with rain."

    @pytest.mark.asyncio
    async def test_draft_mode_skips_polish(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])

        await make_executor(job_id).tick()

        assert "polish" not in text_model.kinds()

    @pytest.mark.asyncio
    async def test_prompt_carries_previous_sections_in_order(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch1_s1", progress=60, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [2, 2], canonical={(0, 0), (0, 1), (1, 0)})

        await make_executor(job_id).tick()

        user_prompt = text_model.calls[0].user_prompt
        assert "ch0 s0 text" not in user_prompt
        assert user_prompt.index("ch0 s1 text") < user_prompt.index("ch1 s0 text")

    @pytest.mark.asyncio
    async def test_first_section_uses_opening_context(self, session_factory, make_executor, text_model):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])

        await make_executor(job_id).tick()

        user_prompt = text_model.calls[0].user_prompt
        assert "This is the opening of the book." in user_prompt
        assert "Story so far: Beginning of story" in user_prompt

    @pytest.mark.asyncio
    async def test_section_draft_with_raw_newlines_is_accepted(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(
            write=['```json\n{"prose": "Line one.\nLine two.", "synopsis": "Two lines."}\n```']
        )
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch0_s0", constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1])

        result = await make_executor(job_id, model).tick()

        assert result.step == "finalize"
        sections = await _sections(session_factory, book_id)
        assert sections[0].content_text == "Line one.\nLine two."

    @pytest.mark.asyncio
    async def test_last_section_locks_chapter_and_finalizes(self, session_factory, make_executor):
        book_id, job_id = await create_book_with_job(
            session_factory, status=JobStatus.RUNNING, step="write_ch1_s0", progress=55, constitution=CONSTITUTION
        )
        await create_outline(session_factory, book_id, [1, 1], canonical={(0, 0)})

        result = await make_executor(job_id).tick()

        assert result.step == "finalize"
        assert result.progress == 95
        chapters = await _chapters(session_factory, book_id)
        assert chapters[1].status == UnitStatus.LOCKED


class TestPlanPrompt:
    @pytest.mark.asyncio
    async def test_plan_prompt_uses_book_config(self, session_factory, make_executor):
        model = ScriptedTextModel.for_book(plan=[plan_json([1])], write=[section_json()])
        _, job_id = await create_book_with_job(
            session_factory,
            status=JobStatus.RUNNING,
            step="plan",
            progress=10,
            constitution=CONSTITUTION,
            preview=build_preview(target_pages=60),
        )

        await make_executor(job_id, model).tick()

        system_prompt = model.calls[0].system_prompt
        assert "~60 page book (17000 words total) with 12 chapters" in system_prompt
