"""Typed job steps and pure transition functions.

A job's ``step`` column is the program counter of a long-running generation:
it always names the *next* unit of work. This module is the only place the
string encoding (``write_ch<N>_s<M>``) is parsed or produced, and the only
place that decides the next step, progress value and retry counter. Nothing
here touches the database or the network, so every rule can be tested in
isolation.

Step order:
    created → constitution → plan → write_ch0_s0 → ... → finalize → complete

Progress schedule:
    constitution started  5
    constitution done    10
    plan done            15
    section n of total   20 + round((n + 1) / total * 70), half-up
    last section         95
    cover regenerating   97
    waiting for cover    98
    complete            100
"""

import enum
import math
import re
from dataclasses import dataclass
from typing import Sequence

from chronicle.exceptions import UnknownStepError

PROGRESS_CONSTITUTION_STARTED = 5
PROGRESS_CONSTITUTION_DONE = 10
PROGRESS_PLAN_DONE = 15
PROGRESS_WRITING_BASE = 20
PROGRESS_WRITING_SPAN = 70
PROGRESS_LAST_SECTION = 95
PROGRESS_COVER_REGENERATING = 97
PROGRESS_COVER_WAITING = 98
PROGRESS_COMPLETE = 100

_WRITE_STEP_PATTERN = re.compile(r"^write_ch(\d+)_s(\d+)$")


class StepKind(enum.Enum):
    CREATED = "created"
    CONSTITUTION = "constitution"
    PLAN = "plan"
    WRITE = "write"
    FINALIZE = "finalize"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Step:
    """A decoded job step.

    Write steps carry zero-based ``chapter`` and ``section`` indices; every
    other kind leaves them as None.
    """

    kind: StepKind
    chapter: int | None = None
    section: int | None = None

    @classmethod
    def write(cls, chapter: int, section: int) -> "Step":
        return cls(StepKind.WRITE, chapter, section)

    @classmethod
    def parse(cls, value: str | None) -> "Step":
        """Decode a persisted step value.

        Raises:
            UnknownStepError: If the value is not a known step encoding.
        """
        if value is None:
            raise UnknownStepError(value)

        match = _WRITE_STEP_PATTERN.match(value)
        if match:
            return cls.write(int(match.group(1)), int(match.group(2)))

        if value == StepKind.WRITE.value:
            raise UnknownStepError(value)
        try:
            return cls(StepKind(value))
        except ValueError:
            raise UnknownStepError(value) from None

    def __str__(self) -> str:
        if self.kind is StepKind.WRITE:
            return f"write_ch{self.chapter}_s{self.section}"
        return self.kind.value


CREATED = Step(StepKind.CREATED)
CONSTITUTION = Step(StepKind.CONSTITUTION)
PLAN = Step(StepKind.PLAN)
FINALIZE = Step(StepKind.FINALIZE)
COMPLETE = Step(StepKind.COMPLETE)


@dataclass(frozen=True)
class Transition:
    """Outcome of a completed unit of work.

    Attributes:
        step: The next step to persist.
        progress: Proposed progress (apply through ``next_progress``).
        attempt: Retry counter to persist; 0 whenever the step advances.
        lock_chapters: Chapter indices that are now finished.
        message: Human-readable status for the tick result.
    """

    step: Step
    progress: int
    attempt: int = 0
    lock_chapters: tuple[int, ...] = ()
    message: str = ""


class ConsistencyDecision(enum.Enum):
    ACCEPT = "accept"
    REWRITE = "rewrite"


def after_constitution() -> Transition:
    """Constitution persisted and locked; planning is next."""
    return Transition(PLAN, PROGRESS_CONSTITUTION_DONE, message=status_message(PLAN))


def after_plan(outline: Sequence[int]) -> Transition:
    """Chapters materialized; writing starts at the first non-empty chapter.

    Args:
        outline: Section count per chapter, in chapter order.
    """
    first = _next_chapter_with_sections(outline, start=0)
    if first is None:
        # Nothing to write: every chapter is finished as soon as it exists.
        return Transition(
            FINALIZE,
            PROGRESS_PLAN_DONE,
            lock_chapters=tuple(range(len(outline))),
            message=status_message(FINALIZE),
        )

    step = Step.write(first, 0)
    return Transition(
        step,
        PROGRESS_PLAN_DONE,
        lock_chapters=tuple(range(first)),
        message=status_message(step),
    )


def after_section(step: Step, outline: Sequence[int]) -> Transition:
    """A section was promoted; advance to the next section in outline order.

    Finishing the last section of a chapter locks it (along with any empty
    chapters that are skipped on the way). Finishing the last section of the
    book moves to ``finalize`` at progress 95.

    Raises:
        ValueError: If ``step`` is not a write step inside ``outline``.
    """
    chapter, section = step.chapter, step.section
    if step.kind is not StepKind.WRITE or chapter is None or section is None:
        raise ValueError(f"after_section needs a write step, got {step}")
    if chapter >= len(outline) or section >= outline[chapter]:
        raise ValueError(f"{step} is outside the outline")

    total = sum(outline)
    done = sum(outline[:chapter]) + section + 1

    if section + 1 < outline[chapter]:
        next_step = Step.write(chapter, section + 1)
        return Transition(
            next_step,
            writing_progress(done, total),
            message=status_message(next_step),
        )

    next_chapter = _next_chapter_with_sections(outline, start=chapter + 1)
    if next_chapter is None:
        return Transition(
            FINALIZE,
            PROGRESS_LAST_SECTION,
            lock_chapters=tuple(range(chapter, len(outline))),
            message=status_message(FINALIZE),
        )

    next_step = Step.write(next_chapter, 0)
    return Transition(
        next_step,
        writing_progress(done, total),
        lock_chapters=tuple(range(chapter, next_chapter)),
        message=status_message(next_step),
    )


def writing_progress(done: int, total: int) -> int:
    """Progress after ``done`` of ``total`` sections, rounded half-up."""
    if total <= 0:
        return PROGRESS_LAST_SECTION
    return PROGRESS_WRITING_BASE + math.floor(done / total * PROGRESS_WRITING_SPAN + 0.5)


def decide_consistency(passed: bool, attempt: int, ceiling: int) -> ConsistencyDecision:
    """Rewrite a failing section while retries remain, otherwise accept it."""
    if not passed and attempt < ceiling:
        return ConsistencyDecision.REWRITE
    return ConsistencyDecision.ACCEPT


def next_progress(current: int | None, proposed: int) -> int:
    """Progress never decreases."""
    return max(current or 0, proposed)


def status_message(step: Step) -> str:
    """User-facing description of the work a step represents."""
    if step.kind is StepKind.CONSTITUTION:
        return "Creating story foundation..."
    if step.kind is StepKind.PLAN:
        return "Planning chapters..."
    if step.kind is StepKind.WRITE:
        return f"Writing chapter {step.chapter + 1}, section {step.section + 1}..."
    if step.kind is StepKind.FINALIZE:
        return "Finalizing..."
    if step.kind is StepKind.COMPLETE:
        return "Completed"
    return "Generating..."


def _next_chapter_with_sections(outline: Sequence[int], start: int) -> int | None:
    for index in range(start, len(outline)):
        if outline[index] > 0:
            return index
    return None
