"""Reusable polling loop for external predictions."""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol

from ...backends.base import GenerationBackend, PredictionHandle, PredictionState, PredictionStatus
from ...backends.classify import is_content_policy_message
from .cancellation import CancelToken
from .exceptions import BackendFailure, QuotaOrRateLimitError
from .models import JobRecord, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class PollPolicy:
    """Cadence and limits for one polled operation.

    The n-th wait is ``interval_s * backoff_factor ** n`` capped at
    ``max_interval_s``; a factor of 1.0 gives a fixed interval.
    """
    interval_s: float
    max_attempts: int
    backoff_factor: float = 1.0
    max_interval_s: Optional[float] = None
    deadline_s: Optional[float] = None
    grace_period_s: float = 2.0
    grace_attempts: int = 3

    def interval_for(self, attempt: int) -> float:
        delay = self.interval_s * (self.backoff_factor ** attempt)
        if self.max_interval_s is not None:
            delay = min(delay, self.max_interval_s)
        return delay


def policy_for(media: str) -> PollPolicy:
    """Build the configured policy for a chain name (image, upscale, video, mesh, cad_mesh)."""
    from ... import config as cfg

    common = dict(
        deadline_s=cfg.POLL_WALL_CLOCK_LIMIT_S,
        grace_period_s=cfg.POLL_GRACE_PERIOD_S,
        grace_attempts=cfg.POLL_GRACE_ATTEMPTS,
    )
    if media == "video":
        return PollPolicy(cfg.POLL_VIDEO_INTERVAL_S, cfg.POLL_VIDEO_MAX_ATTEMPTS, **common)
    if media == "mesh":
        return PollPolicy(cfg.POLL_MESH_INTERVAL_S, cfg.POLL_MESH_MAX_ATTEMPTS, **common)
    if media == "cad_mesh":
        return PollPolicy(
            cfg.POLL_CAD_INITIAL_INTERVAL_S,
            cfg.POLL_CAD_MAX_ATTEMPTS,
            backoff_factor=cfg.POLL_CAD_BACKOFF_FACTOR,
            max_interval_s=cfg.POLL_CAD_MAX_INTERVAL_S,
            **common,
        )
    return PollPolicy(cfg.POLL_IMAGE_INTERVAL_S, cfg.POLL_IMAGE_MAX_ATTEMPTS, **common)


class PollOutcomeKind(str, enum.Enum):
    succeeded = "succeeded"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"


@dataclass
class PollOutcome:
    kind: PollOutcomeKind
    urls: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    content_policy: bool = False
    external: bool = False  # another writer already finalised the job
    attempts: int = 0

    @property
    def result(self) -> Optional[str]:
        return self.urls[0] if self.urls else None


class JobLookup(Protocol):
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...


StatusHook = Callable[[PredictionStatus, int], Awaitable[None]]


class PredictionPoller:
    """Drives one prediction to a terminal outcome.

    Each iteration checks cancellation, then the job's own status (a job
    finalised by another path, e.g. the completion webhook, stops the
    loop at once), then waits and queries the backend.  Transient status
    errors count as attempts.
    """

    def __init__(self, jobs: JobLookup, clock: Callable[[], float] = time.monotonic) -> None:
        self._jobs = jobs
        self._clock = clock

    async def wait(
        self,
        handle: PredictionHandle,
        backend: GenerationBackend,
        *,
        job_id: str,
        token: CancelToken,
        policy: PollPolicy,
        on_status: Optional[StatusHook] = None,
    ) -> PollOutcome:
        started = self._clock()
        attempt = 0
        while attempt < policy.max_attempts:
            if token.cancelled:
                return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt)
            external = await self._external_outcome(job_id, attempt)
            if external is not None:
                return external

            delay = policy.interval_for(attempt)
            if policy.deadline_s is not None:
                remaining = policy.deadline_s - (self._clock() - started)
                if remaining <= 0:
                    return self._timed_out(handle, attempt, policy)
                delay = min(delay, remaining)
            if await token.sleep(delay):
                return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt)
            attempt += 1

            try:
                status = await backend.status(handle)
            except (BackendFailure, QuotaOrRateLimitError) as exc:
                logger.warning(
                    "Status check %d for prediction %s failed: %s",
                    attempt, handle.prediction_id, exc,
                )
                continue

            if on_status is not None:
                await on_status(status, attempt)

            if status.state == PredictionState.succeeded:
                if status.urls:
                    return PollOutcome(PollOutcomeKind.succeeded, urls=list(status.urls), attempts=attempt)
                return await self._grace(handle, job_id, token, policy, attempt)
            if status.state == PredictionState.failed:
                reason = status.error or "Prediction failed"
                return PollOutcome(
                    PollOutcomeKind.failed,
                    reason=reason,
                    content_policy=is_content_policy_message(reason),
                    attempts=attempt,
                )
            if status.state == PredictionState.canceled:
                if token.cancelled:
                    return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt)
                return PollOutcome(
                    PollOutcomeKind.failed,
                    reason="Prediction was cancelled by the provider",
                    attempts=attempt,
                )
            if policy.deadline_s is not None and self._clock() - started >= policy.deadline_s:
                return self._timed_out(handle, attempt, policy)

        return self._timed_out(handle, attempt, policy)

    async def _external_outcome(self, job_id: str, attempt: int) -> Optional[PollOutcome]:
        rec = await self._jobs.get(job_id)
        if rec is None:
            return PollOutcome(PollOutcomeKind.cancelled, reason="Job no longer exists", attempts=attempt)
        if rec.status == JobStatus.completed:
            return PollOutcome(PollOutcomeKind.succeeded, urls=list(rec.outputs), external=True, attempts=attempt)
        if rec.status == JobStatus.failed:
            return PollOutcome(PollOutcomeKind.failed, reason=rec.error, external=True, attempts=attempt)
        return None

    async def _grace(
        self,
        handle: PredictionHandle,
        job_id: str,
        token: CancelToken,
        policy: PollPolicy,
        attempt: int,
    ) -> PollOutcome:
        # Success without a URL: the result may still be in flight through
        # another writer.  Re-check the registry before giving up.
        for _ in range(policy.grace_attempts):
            if await token.sleep(policy.grace_period_s):
                return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt)
            external = await self._external_outcome(job_id, attempt)
            if external is not None:
                return external
        logger.warning("Prediction %s succeeded without output", handle.prediction_id)
        return PollOutcome(
            PollOutcomeKind.failed,
            reason="Prediction succeeded but returned no output",
            attempts=attempt,
        )

    @staticmethod
    def _timed_out(handle: PredictionHandle, attempt: int, policy: PollPolicy) -> PollOutcome:
        logger.warning(
            "Prediction %s on %s timed out after %d polls", handle.prediction_id, handle.backend, attempt
        )
        return PollOutcome(
            PollOutcomeKind.timed_out,
            reason=f"Generation timed out after {attempt} status checks",
            attempts=attempt,
        )
