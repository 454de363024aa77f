"""One generation step: dispatch through a fallback chain, then poll to completion."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ...backends.base import GenerationRequest, PredictionHandle, PredictionState, PredictionStatus
from .cancellation import CancelToken
from .exceptions import (
    BackendFailure,
    ContentPolicyError,
    JobCancelled,
    JobFinalizedElsewhere,
    PredictionTimeout,
)
from .fallback import ModelFallbackChain
from .models import PredictionRef
from .poller import PollOutcomeKind, PredictionPoller, policy_for
from .registry import JobRegistry

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    urls: List[str] = field(default_factory=list)
    backend: str = ""
    resumed: bool = False

    @property
    def url(self) -> str:
        return self.urls[0]


class StepRunner:
    """Runs a single media step for a job and records its active prediction.

    A step that finds its own prediction already recorded on the job
    (same stage and slot, e.g. after a restart) resumes polling it
    instead of submitting a second one.
    """

    def __init__(self, registry: JobRegistry, chain: ModelFallbackChain, poller: PredictionPoller) -> None:
        self.registry = registry
        self.chain = chain
        self.poller = poller

    async def generate(
        self,
        job_id: str,
        media: str,
        request: GenerationRequest,
        token: CancelToken,
        *,
        stage: str,
        index: Optional[int] = None,
        progress: Optional[Tuple[float, float]] = None,
    ) -> StepResult:
        """Produce artifact URLs for *request* on the *media* chain.

        *progress* is an optional ``(start, end)`` percent window; polled
        status changes move the job's progress within it.

        Raises
        ------
        JobCancelled
            Cancellation was observed before or during the step.
        JobFinalizedElsewhere
            Another writer finalised the job while it was polled.
        ContentPolicyError, BackendFailure, PredictionTimeout
            The step failed; the message is user-facing.
        """
        token.raise_if_cancelled()

        resumed = await self._resumable(job_id, media, stage, index)
        if resumed is not None:
            handle, backend = resumed
            logger.info("Job %s resuming %s prediction %s", job_id, stage, handle.prediction_id)
        else:
            dispatched = await self.chain.dispatch(media, request, token)
            response = dispatched.response
            if not response.pending:
                if not response.outputs:
                    raise BackendFailure(f"{dispatched.backend_name} returned no output")
                return StepResult(urls=list(response.outputs), backend=dispatched.backend_name)
            handle, backend = response.handle, dispatched.backend
            await self.registry.set_prediction(job_id, PredictionRef(
                prediction_id=handle.prediction_id,
                backend=handle.backend,
                media=media,
                stage=stage,
                index=index,
            ))

        on_status = None
        if progress is not None:
            on_status = self._progress_hook(job_id, progress)

        outcome = await self.poller.wait(
            handle, backend, job_id=job_id, token=token, policy=policy_for(media), on_status=on_status,
        )

        if outcome.external:
            raise JobFinalizedElsewhere(job_id)
        if outcome.kind == PollOutcomeKind.cancelled:
            raise JobCancelled()
        if not await self.registry.claim_prediction(job_id, handle.prediction_id):
            # The completion webhook took this prediction over.
            raise JobFinalizedElsewhere(job_id)
        if outcome.kind == PollOutcomeKind.succeeded:
            return StepResult(urls=outcome.urls, backend=handle.backend, resumed=resumed is not None)
        if outcome.kind == PollOutcomeKind.timed_out:
            raise PredictionTimeout(outcome.reason or "Generation timed out")
        if outcome.content_policy:
            raise ContentPolicyError(backend=handle.backend)
        raise BackendFailure(f"Generation failed: {outcome.reason}", backend=handle.backend)

    async def _resumable(
        self, job_id: str, media: str, stage: str, index: Optional[int]
    ) -> Optional[Tuple[PredictionHandle, object]]:
        rec = await self.registry.get(job_id)
        ref = rec.active_prediction if rec is not None else None
        if ref is None or ref.stage != stage or ref.index != index or ref.media != media:
            return None
        backend = self.chain.find(ref.backend)
        if backend is None:
            logger.warning("Job %s: backend %s for prediction %s is gone", job_id, ref.backend, ref.prediction_id)
            return None
        return PredictionHandle(prediction_id=ref.prediction_id, backend=ref.backend, media=media), backend

    def _progress_hook(self, job_id: str, window: Tuple[float, float]):
        start, end = window
        last = {"state": None}

        async def _hook(status: PredictionStatus, attempt: int) -> None:
            if status.state == last["state"]:
                return
            last["state"] = status.state
            if status.state == PredictionState.processing:
                pct = start + (end - start) / 2
            elif status.state == PredictionState.succeeded:
                pct = end
            else:
                pct = start
            rec = await self.registry.get(job_id)
            if rec is not None and not rec.is_terminal:
                await self.registry.set_progress(job_id, pct, rec.progress.message)

        return _hook
