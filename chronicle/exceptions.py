"""Shared exceptions for the job engine.

This module contains exception classes used across services, workers and
routes so that no service has to import another service just to catch
its errors.
"""

from typing import Any


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents a
    collaborator from being constructed (e.g., ANTHROPIC_API_KEY or
    GOOGLE_API_KEY not set when a client is created).
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when a model status change is not allowed by its state machine.

    Used by GenerationJob (JobStatus), Chapter and Section (UnitStatus).
    Only transitions listed in the model's VALID_TRANSITIONS are accepted.

    Attributes:
        from_status: The status before the attempted transition.
        to_status: The status that was attempted.

    Example:
        >>> job.status = JobStatus.COMPLETE
        >>> job.status = JobStatus.RUNNING  # Terminal state, cannot resume
        InvalidStateTransitionError: Invalid transition: complete → running
    """

    def __init__(self, message: str, from_status: Any, to_status: Any):
        """Initialize InvalidStateTransitionError with transition details.

        Args:
            message: Human-readable error message.
            from_status: Current status before transition attempt.
            to_status: Target status that was attempted.
        """
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        """Return detailed error message with transition context."""
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class JobNotFoundError(Exception):
    """Raised when a tick targets a job id that does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class UnknownStepError(ValueError):
    """Raised when a persisted step value cannot be decoded."""

    def __init__(self, step: str | None):
        self.step = step
        super().__init__(f"Unknown step: {step!r}")


class LLMResponseParseError(Exception):
    """Raised when model output cannot be parsed into the expected structure.

    Parse failures are step failures: the tick marks the job failed
    instead of continuing with partial data.

    Attributes:
        preview: First 200 characters of the raw response, for debugging.
    """

    def __init__(self, message: str, raw_text: str = ""):
        self.preview = raw_text[:200]
        super().__init__(f"{message}: {self.preview}..." if raw_text else message)


class LeaseLostError(Exception):
    """Raised when a tick tries to write after losing its job lease.

    Another tick took over the job (the lease expired), so the current
    tick must stop without persisting anything further.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Tick lease lost for job {job_id}")


class CoverGenerationError(Exception):
    """Raised when cover generation can no longer be retried for a book."""

    pass
