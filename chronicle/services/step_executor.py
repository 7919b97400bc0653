"""Step executor: one tick advances one job by one unit of work.

A tick is stateless. It loads the job, claims the per-job lease, performs
the unit of work named by ``job.step`` and persists the next step before
returning. Any process can run the next tick; a crashed tick only costs the
lease lifetime.

Units of work:
    created/constitution  generate and lock the book constitution, start the cover
    plan                  materialize chapters and sections from the outline
    write_ch<N>_s<M>      write, check, optionally rewrite/polish, promote one section
    finalize              completion through the finalization gate

Architecture Pattern:
    Short transactions only. External calls (LLM, cover pipeline) happen
    outside any transaction; every write re-verifies the lease token.

Usage:
    executor = StepExecutor(job_id)
    result = await executor.tick()
"""

import asyncio
import contextlib
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronicle.clients.protocols import TextModel
from chronicle.config import get_max_consistency_retries, get_tick_lease_seconds
from chronicle.exceptions import JobNotFoundError, LeaseLostError, LLMResponseParseError
from chronicle.models import (
    Book,
    Chapter,
    GenerationJob,
    GenerationMode,
    JobStatus,
    Section,
    UnitStatus,
    utcnow,
)
from chronicle.schemas.generation import (
    BookPlan,
    ChapterPlan,
    ConsistencyResult,
    Constitution,
    SectionDraft,
)
from chronicle.services import prompts
from chronicle.services.cover_service import CoverService
from chronicle.services.finalization_gate import FinalizationGate
from chronicle.services.job_store import JobStore
from chronicle.services.json_parsing import parse_model_json
from chronicle.services.step_machine import (
    CONSTITUTION,
    PROGRESS_CONSTITUTION_STARTED,
    ConsistencyDecision,
    Step,
    StepKind,
    Transition,
    after_constitution,
    after_plan,
    after_section,
    decide_consistency,
    next_progress,
)
from chronicle.utils.logging import get_logger

ModelT = TypeVar("ModelT", bound=BaseModel)
Launcher = Callable[[Coroutine[Any, Any, Any]], Any]

TICK_IN_PROGRESS_MESSAGE = "Tick already in progress"

CONSTITUTION_MAX_TOKENS = 2048
PLAN_MAX_TOKENS = 8192
SECTION_MAX_TOKENS = 4096
CONSISTENCY_MAX_TOKENS = 1024

_background_tasks: set[asyncio.Task[Any]] = set()


def launch_in_background(coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
    """Run ``coro`` on the current loop, outliving the tick that started it."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


@dataclass
class TickResult:
    """Outcome of one tick, safe to serialize as an API response."""

    status: str
    step: str
    progress: int
    message: str
    error: str | None = None
    book_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _result_from_job(job: GenerationJob, message: str) -> TickResult:
    return TickResult(
        status=job.status.value,
        step=job.step,
        progress=job.progress,
        message=message,
        error=job.error,
        book_id=str(job.book_id),
    )


def _validate(model: type[ModelT], text: str) -> ModelT:
    data = parse_model_json(text)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise LLMResponseParseError(f"Invalid {model.__name__}: {e.error_count()} errors", raw_text=text) from e


class StepExecutor:
    """Advances one generation job by one step per ``tick()``.

    Args:
        job_id: Job to advance.
        text_model: Writing collaborator (defaults to AnthropicClient, built lazily).
        cover_service: Cover asset job, started after the constitution and
            gated on by finalization.
        session_factory: Session factory (defaults to the configured database).
        launch: Runs the early cover generation without awaiting it
            (default: a task on the running loop).
    """

    def __init__(
        self,
        job_id: uuid.UUID | str,
        text_model: TextModel | None = None,
        cover_service: CoverService | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        launch: Launcher = launch_in_background,
    ):
        self.job_id = uuid.UUID(str(job_id))
        self.launch = launch
        self.store = JobStore(session_factory)
        self._text_model = text_model
        self.cover_service = cover_service or CoverService(session_factory=self.store.session_factory)
        self.gate = FinalizationGate(self.cover_service, self.store)
        self.max_consistency_retries = get_max_consistency_retries()
        self.lease_seconds = get_tick_lease_seconds()
        self.log = get_logger(__name__).bind(job_id=str(self.job_id))

    @property
    def text_model(self) -> TextModel:
        if self._text_model is None:
            from chronicle.clients.anthropic import AnthropicClient

            self._text_model = AnthropicClient()
        return self._text_model

    async def tick(self) -> TickResult:
        """Perform the next unit of work for the job.

        Returns:
            TickResult describing the persisted state after the tick.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self.store.get(self.job_id)
        if job is None:
            raise JobNotFoundError(str(self.job_id))

        if job.status == JobStatus.COMPLETE:
            return _result_from_job(job, "Book generation already complete")
        if job.status == JobStatus.FAILED:
            return _result_from_job(job, job.error or "Generation failed")

        token = await self.store.acquire_lease(job.id, job.step, self.lease_seconds)
        if token is None:
            current = await self.store.get(self.job_id)
            self.log.info("tick_skipped_lease_held", step=job.step)
            return _result_from_job(current or job, TICK_IN_PROGRESS_MESSAGE)

        self.log.info("tick_started", step=job.step, status=job.status.value, progress=job.progress)
        try:
            job = await self._mark_running(token)
            step = Step.parse(job.step)
            result = await self._dispatch(job, step, token)
            self.log.info(
                "step_completed",
                step=job.step,
                next_step=result.step,
                status=result.status,
                progress=result.progress,
            )
            return result

        except LeaseLostError:
            self.log.warning("tick_lease_lost", step=job.step)
            current = await self.store.get(self.job_id)
            return _result_from_job(current or job, TICK_IN_PROGRESS_MESSAGE)

        except Exception as e:
            error_message = str(e) or type(e).__name__
            self.log.error(
                "tick_failed",
                step=job.step,
                error_type=type(e).__name__,
                error_message=error_message,
            )
            with contextlib.suppress(Exception):
                await self.store.mark_failed(self.job_id, error_message, token=token)
            return TickResult(
                status=JobStatus.FAILED.value,
                step=job.step,
                progress=job.progress,
                message="Generation failed",
                error=error_message,
                book_id=str(job.book_id),
            )

        finally:
            with contextlib.suppress(Exception):
                await self.store.release_lease(self.job_id, token)

    async def _mark_running(self, token: str) -> GenerationJob:
        async with self.store.leased_transaction(self.job_id, token) as (_db, job):
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.RUNNING
                job.started_at = utcnow()
        return job

    async def _dispatch(self, job: GenerationJob, step: Step, token: str) -> TickResult:
        if step.kind in (StepKind.CREATED, StepKind.CONSTITUTION):
            return await self._run_constitution(job, token)
        if step.kind is StepKind.PLAN:
            return await self._run_plan(job, token)
        if step.kind is StepKind.WRITE:
            return await self._run_write(job, step, token)
        # finalize, or complete on a job that never reached the complete status
        return await self._run_finalize(job, token)

    async def _apply_transition(
        self,
        db: AsyncSession,
        job: GenerationJob,
        transition: Transition,
    ) -> None:
        if transition.lock_chapters:
            result = await db.execute(
                select(Chapter).where(
                    Chapter.book_id == job.book_id,
                    Chapter.index.in_(transition.lock_chapters),
                    Chapter.status == UnitStatus.DRAFT,
                )
            )
            for chapter in result.scalars().all():
                chapter.status = UnitStatus.LOCKED

        job.step = str(transition.step)
        job.progress = next_progress(job.progress, transition.progress)
        job.attempt = transition.attempt

    async def _load_constitution(self, book_id: uuid.UUID) -> tuple[Book, Constitution]:
        book = await self.store.get_book(book_id)
        if book is None:
            raise LookupError(f"Book not found: {book_id}")
        try:
            constitution = Constitution.model_validate(book.constitution_json or {})
        except ValidationError as e:
            raise LLMResponseParseError("Book constitution is missing or incomplete") from e
        return book, constitution

    async def _run_constitution(self, job: GenerationJob, token: str) -> TickResult:
        job = await self.store.update(
            job.id,
            token,
            step=str(CONSTITUTION),
            progress=next_progress(job.progress, PROGRESS_CONSTITUTION_STARTED),
        )

        book = await self.store.get_book(job.book_id)
        if book is None:
            raise LookupError(f"Book not found: {job.book_id}")

        constitution: Constitution | None = None
        if book.constitution_locked:
            self.log.info("constitution_already_locked", book_id=str(book.id))
        else:
            system_prompt, user_prompt = prompts.constitution_prompt(job.preview or {}, job.genre)
            text = await self.text_model.complete(
                system_prompt, user_prompt, max_tokens=CONSTITUTION_MAX_TOKENS
            )
            constitution = _validate(Constitution, text)

        transition = after_constitution()
        async with self.store.leased_transaction(job.id, token) as (db, locked_job):
            locked_book = await db.get(Book, job.book_id, with_for_update=True)
            if constitution is not None and locked_book is not None and not locked_book.constitution_locked:
                locked_book.constitution_json = constitution.model_dump()
                locked_book.constitution_locked = True
                locked_book.constitution_locked_at = utcnow()
            await self._apply_transition(db, locked_job, transition)
            result = _result_from_job(locked_job, "Constitution generated. Next: planning chapters.")

        await self._start_cover(job.book_id)
        return result

    async def _start_cover(self, book_id: uuid.UUID) -> None:
        """Queue the cover so it generates while the sections are written.

        A cover that is already ready or running is left alone. Failing to
        start is not a job failure: finalization regenerates a missing cover.
        """
        try:
            outcome = await self.cover_service.request_cover(book_id)
        except Exception as e:
            self.log.warning("cover_start_failed", book_id=str(book_id), error_message=str(e))
            return

        self.log.info("cover_start_requested", book_id=str(book_id), outcome=outcome)
        if outcome == "queued":
            self.launch(self._generate_cover(book_id))

    async def _generate_cover(self, book_id: uuid.UUID) -> None:
        try:
            await self.cover_service.generate_for_book(book_id)
        except Exception as e:
            self.log.error(
                "background_cover_failed",
                book_id=str(book_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )

    async def _run_plan(self, job: GenerationJob, token: str) -> TickResult:
        chapters = await self.store.load_chapters(job.book_id)

        plan: list[ChapterPlan] | None = None
        if chapters:
            self.log.info("plan_already_materialized", chapters=len(chapters))
        else:
            _book, constitution = await self._load_constitution(job.book_id)
            config = prompts.get_book_config(job.target_pages)
            system_prompt, user_prompt = prompts.plan_prompt(
                job.preview or {}, constitution, config, job.target_pages
            )
            text = await self.text_model.complete(system_prompt, user_prompt, max_tokens=PLAN_MAX_TOKENS)
            try:
                plan = BookPlan.validate_python(parse_model_json(text))
            except ValidationError as e:
                raise LLMResponseParseError(f"Invalid plan: {e.error_count()} errors", raw_text=text) from e
            if not plan:
                raise LLMResponseParseError("Plan has no chapters", raw_text=text)

        async with self.store.leased_transaction(job.id, token) as (db, locked_job):
            existing = await db.execute(
                select(Chapter.id).where(Chapter.book_id == job.book_id).limit(1)
            )
            if plan is not None and existing.first() is None:
                for chapter_index, chapter_plan in enumerate(plan):
                    chapter = Chapter(
                        book_id=job.book_id,
                        index=chapter_index,
                        title=chapter_plan.title,
                        purpose=chapter_plan.purpose,
                        status=UnitStatus.DRAFT,
                    )
                    db.add(chapter)
                    await db.flush()
                    for section_index, section_plan in enumerate(chapter_plan.sections):
                        db.add(
                            Section(
                                chapter_id=chapter.id,
                                index=section_index,
                                title=section_plan.title,
                                goal=section_plan.goal,
                                target_words=section_plan.target_words,
                                status=UnitStatus.DRAFT,
                            )
                        )
                outline = [len(c.sections) for c in plan]
            else:
                outline = [len(c.sections) for c in chapters] if chapters else await self._outline(db, job.book_id)

            await self._apply_transition(db, locked_job, after_plan(outline))
            result = _result_from_job(
                locked_job,
                f"Plan created: {len(outline)} chapters. Next: writing sections.",
            )

        return result

    async def _outline(self, db: AsyncSession, book_id: uuid.UUID) -> list[int]:
        result = await db.execute(
            select(Chapter).where(Chapter.book_id == book_id).order_by(Chapter.index.asc())
        )
        outline = []
        for chapter in result.scalars().all():
            count = await db.execute(select(Section.id).where(Section.chapter_id == chapter.id))
            outline.append(len(count.all()))
        return outline

    async def _run_write(self, job: GenerationJob, step: Step, token: str) -> TickResult:
        chapters = await self.store.load_chapters(job.book_id)
        if not chapters:
            raise LookupError("No chapters found")
        outline = [len(chapter.sections) for chapter in chapters]
        chapter_index, section_index = step.chapter, step.section
        if chapter_index is None or section_index is None:
            raise ValueError(f"Not a section step: {step}")

        if chapter_index >= len(chapters) or section_index >= outline[chapter_index]:
            raise LookupError(f"Section not found: ch{chapter_index}_s{section_index}")

        chapter = chapters[chapter_index]
        section = chapter.sections[section_index]
        transition = after_section(step, outline)

        if section.status == UnitStatus.CANONICAL:
            self.log.info("section_already_canonical", step=str(step))
            async with self.store.leased_transaction(job.id, token) as (db, locked_job):
                await self._apply_transition(db, locked_job, transition)
                return _result_from_job(locked_job, transition.message)

        _book, constitution = await self._load_constitution(job.book_id)
        previous = await self.store.previous_canonical_sections(
            job.book_id, chapter_index, section_index
        )

        system_prompt, user_prompt = prompts.write_section_prompt(
            job.preview or {},
            constitution,
            chapter.title,
            chapter.purpose or "",
            section.title,
            section.goal or "",
            section.target_words,
            previous,
            job.story_synopsis,
        )
        draft = _validate(
            SectionDraft,
            await self.text_model.complete(system_prompt, user_prompt, max_tokens=SECTION_MAX_TOKENS),
        )
        prose = draft.prose

        system_prompt, user_prompt = prompts.consistency_prompt(prose, constitution, previous)
        check = _validate(
            ConsistencyResult,
            await self.text_model.complete(system_prompt, user_prompt, max_tokens=CONSISTENCY_MAX_TOKENS),
        )

        decision = decide_consistency(check.passed, job.attempt, self.max_consistency_retries)
        if decision is ConsistencyDecision.REWRITE:
            self.log.info("section_rewrite_started", step=str(step), issues=len(check.issues), attempt=job.attempt)
            system_prompt, user_prompt = prompts.rewrite_prompt(prose, check.issues, constitution, section.goal or "")
            rewritten = await self.text_model.complete(system_prompt, user_prompt, max_tokens=SECTION_MAX_TOKENS)
            prose = rewritten.strip() or prose
            job = await self.store.update(job.id, token, attempt=job.attempt + 1)
        elif not check.passed:
            self.log.warning("section_accepted_with_issues", step=str(step), issues=check.issues[:5])

        if job.mode is GenerationMode.POLISHED:
            system_prompt, user_prompt = prompts.polish_prompt(prose, (job.preview or {}).get("cast") or [])
            polished = await self.text_model.complete(system_prompt, user_prompt, max_tokens=SECTION_MAX_TOKENS)
            prose = polished.strip() or prose

        async with self.store.leased_transaction(job.id, token) as (db, locked_job):
            locked_section = await db.get(Section, section.id, with_for_update=True)
            if locked_section is not None and locked_section.status == UnitStatus.DRAFT:
                locked_section.content_text = prose
                locked_section.status = UnitStatus.CANONICAL
                locked_section.promoted_at = utcnow()
            locked_job.story_synopsis = draft.synopsis or locked_job.story_synopsis
            await self._apply_transition(db, locked_job, transition)
            result = _result_from_job(
                locked_job,
                f"Wrote {chapter.title} - {section.title}. Progress: {locked_job.progress}%",
            )

        return result

    async def _run_finalize(self, job: GenerationJob, token: str) -> TickResult:
        outcome = await self.gate.run(job, token)
        current = await self.store.get(job.id)
        message = "Book generation complete!" if outcome.completed else outcome.message
        if current is None:
            raise JobNotFoundError(str(job.id))
        return _result_from_job(current, message)
