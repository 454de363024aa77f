"""Generation job system: registry, pipelines, polling and fan-out.

Only leaf modules are re-exported here; the registry and pipelines are
imported from their own modules so backends can depend on the error
taxonomy without pulling in the orchestration layer.
"""
from .exceptions import (
    AllBackendsUnavailable,
    BackendFailure,
    ContentPolicyError,
    GenerationError,
    InvalidRequestError,
    JobBusyError,
    JobCancelled,
    JobQueueFullError,
    PredictionTimeout,
    QuotaOrRateLimitError,
)
from .models import GenerationOptions, JobRecord, JobStatus, JobType

__all__ = [
    "AllBackendsUnavailable",
    "BackendFailure",
    "ContentPolicyError",
    "GenerationError",
    "GenerationOptions",
    "InvalidRequestError",
    "JobBusyError",
    "JobCancelled",
    "JobQueueFullError",
    "JobRecord",
    "JobStatus",
    "JobType",
    "PredictionTimeout",
    "QuotaOrRateLimitError",
]
