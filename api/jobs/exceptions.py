"""Failure taxonomy for generation pipelines.

Every error carries a stable, user-facing message; the dispatcher writes
``str(exc)`` into ``JobRecord.error`` when a job fails.
"""
from __future__ import annotations

from typing import Optional

CANCELLED_REASON = "Cancelled by user"


class GenerationError(Exception):
    """Base class for pipeline failures."""


class InvalidRequestError(GenerationError):
    """The request itself is unusable.  Never retried."""


class QuotaOrRateLimitError(GenerationError):
    """A backend refused for billing or throughput reasons (402 / 429)."""

    def __init__(self, message: str, *, backend: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class ContentPolicyError(GenerationError):
    """A safety filter blocked the prompt or the output.  Never retried."""

    def __init__(self, message: str = "Content blocked by safety filters. Please try a different prompt.",
                 *, backend: Optional[str] = None) -> None:
        super().__init__(message)
        self.backend = backend


class BackendFailure(GenerationError):
    """Backend-side error: 5xx, rejected input, transport failure, bad payload."""

    def __init__(self, message: str, *, backend: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class AllBackendsUnavailable(BackendFailure):
    """Every backend in a fallback chain was tried and refused."""


class PredictionTimeout(GenerationError):
    """A polled prediction never reached a terminal state in time."""


class JobCancelled(GenerationError):
    """Raised inside a pipeline once cooperative cancellation is observed."""

    def __init__(self, message: str = CANCELLED_REASON) -> None:
        super().__init__(message)


class JobQueueFullError(Exception):
    """Raised when the job queue is at capacity."""


class JobBusyError(Exception):
    """The job already has a pipeline running."""


class InvalidTransitionError(Exception):
    """A status change that the job state machine does not allow."""


class JobFinalizedElsewhere(Exception):
    """Another writer (e.g. the completion webhook) already finalised the job."""
