"""Job registry: the single writer-facing entry point for job state."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from .cancellation import CancelToken
from .exceptions import (
    CANCELLED_REASON,
    InvalidRequestError,
    JobBusyError,
    JobQueueFullError,
)
from .models import (
    GenerationOptions,
    JobProgress,
    JobRecord,
    JobStatus,
    JobType,
    PredictionRef,
    SceneStatus,
)
from .notifier import UpdateNotifier
from .store import JobStore

logger = logging.getLogger(__name__)


class Pipeline(Protocol):
    async def run(self, job_id: str, token: CancelToken) -> None:
        ...

    async def cancel_prediction(self, ref: PredictionRef) -> None:
        ...


def _event_for(rec: JobRecord) -> str:
    if rec.status == JobStatus.completed:
        return "completed"
    if rec.status == JobStatus.failed:
        return "failed"
    return "progress"


class JobRegistry:
    """Creates jobs, runs their pipelines, and funnels every state change.

    Each job's pipeline runs as its own asyncio task under a bounded
    semaphore.  Writes go through the store's atomic read-modify-write and
    are published to the notifier only after they are committed; writes
    that change nothing (e.g. against a terminal job) publish nothing.
    """

    def __init__(
        self,
        store: JobStore,
        notifier: Optional[UpdateNotifier] = None,
        *,
        max_concurrent: int = 4,
        max_queued: int = 50,
    ) -> None:
        self.store = store
        self.notifier = notifier or UpdateNotifier()
        self._sem = asyncio.Semaphore(max_concurrent)
        self._max_queued = max_queued
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancelToken] = {}
        self._pipeline: Optional[Pipeline] = None

    def attach(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline

    @property
    def pending_count(self) -> int:
        """Number of pipelines queued or running."""
        return len(self._active_tasks)

    def is_active(self, job_id: str) -> bool:
        task = self._active_tasks.get(job_id)
        return task is not None and not task.done()

    # ── Submit & Run ─────────────────────────────────────────────────

    async def submit(self, options: GenerationOptions) -> str:
        """Record a queued job and start its pipeline; returns the job id.

        Raises
        ------
        JobQueueFullError
            If the number of pending jobs has reached ``max_queued``.
        """
        if self.pending_count >= self._max_queued:
            raise JobQueueFullError(
                f"Job queue full. {self._max_queued} jobs pending. Try again later."
            )
        rec = await self.store.create_job(options)
        logger.info("Job %s queued (%s)", rec.job_id, rec.job_type.value)
        await self.notifier.publish(rec, "queued")
        self._start(rec.job_id)
        return rec.job_id

    def _start(self, job_id: str) -> None:
        token = CancelToken()
        self._tokens[job_id] = token
        task = asyncio.create_task(self._run(job_id, token))
        self._active_tasks[job_id] = task

    async def _run(self, job_id: str, token: CancelToken) -> None:
        try:
            async with self._sem:
                if self._pipeline is None:
                    await self.fail(job_id, "No pipeline configured")
                    return
                await self._pipeline.run(job_id, token)
        except asyncio.CancelledError:
            # Shutdown: leave the job as-is so recover() can resume it.
            logger.info("Pipeline for job %s interrupted", job_id)
            raise
        except Exception as exc:
            logger.exception("Pipeline for job %s crashed", job_id)
            await self.fail(job_id, str(exc) or type(exc).__name__)
        finally:
            if self._active_tasks.get(job_id) is asyncio.current_task():
                self._active_tasks.pop(job_id, None)
            if self._tokens.get(job_id) is token:
                self._tokens.pop(job_id, None)

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get_job(job_id)

    async def list(self, limit: int = 50, status: Optional[JobStatus] = None) -> List[JobRecord]:
        return await self.store.list_jobs(limit=limit, status=status)

    # ── Writes ───────────────────────────────────────────────────────

    async def mutate(
        self,
        job_id: str,
        fn: Callable[[JobRecord], Optional[Dict[str, Any]]],
        *,
        event: Optional[str] = None,
        reopen: bool = False,
    ) -> Optional[JobRecord]:
        rec, changed = await self.store.mutate(job_id, fn, reopen=reopen)
        if changed and rec is not None:
            await self.notifier.publish(rec, event or _event_for(rec))
        return rec

    async def update(
        self,
        job_id: str,
        partial: Dict[str, Any],
        *,
        event: Optional[str] = None,
        reopen: bool = False,
    ) -> Optional[JobRecord]:
        """Merge *partial* into the job; returns the resulting record."""
        return await self.mutate(job_id, lambda _rec: partial, event=event, reopen=reopen)

    async def set_stage(
        self, job_id: str, status: JobStatus, percent: float, message: str, **fields: Any
    ) -> Optional[JobRecord]:
        partial: Dict[str, Any] = {
            "status": status,
            "progress": JobProgress(stage=status, percent=percent, message=message),
        }
        partial.update(fields)
        return await self.update(job_id, partial)

    async def set_progress(self, job_id: str, percent: float, message: str) -> Optional[JobRecord]:
        """Progress-only update that keeps the current status."""

        def _progress(cur: JobRecord) -> Dict[str, Any]:
            return {"progress": cur.progress.model_copy(update={"percent": percent, "message": message})}

        return await self.mutate(job_id, _progress)

    async def set_prediction(self, job_id: str, ref: Optional[PredictionRef]) -> Optional[JobRecord]:
        """Record the job's single active prediction (``None`` clears it)."""
        return await self.update(job_id, {"active_prediction": ref}, event="prediction")

    async def claim_prediction(self, job_id: str, prediction_id: str) -> bool:
        """Atomically take ownership of the job's active prediction result.

        Clears ``active_prediction`` only while it still names
        *prediction_id*.  Exactly one of the poller and the completion
        webhook wins; the loser must leave the job alone.
        """

        def _claim(cur: JobRecord) -> Optional[Dict[str, Any]]:
            ref = cur.active_prediction
            if ref is None or ref.prediction_id != prediction_id:
                return None
            return {"active_prediction": None}

        rec, changed = await self.store.mutate(job_id, _claim)
        if changed and rec is not None:
            await self.notifier.publish(rec, "prediction")
        return changed

    async def merge_manifest(self, job_id: str, **items: Any) -> Optional[JobRecord]:
        def _merge(cur: JobRecord) -> Dict[str, Any]:
            manifest = dict(cur.manifest)
            manifest.update(items)
            return {"manifest": manifest}

        return await self.mutate(job_id, _merge)

    async def complete(
        self,
        job_id: str,
        outputs: List[str],
        *,
        message: str = "Generation complete!",
        manifest: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Optional[JobRecord]:
        """Finalise as completed.  A pending cancel request wins over success."""

        def _complete(cur: JobRecord) -> Dict[str, Any]:
            if cur.cancel_requested:
                return self._failure_partial(cur, CANCELLED_REASON, None)
            partial: Dict[str, Any] = {
                "status": JobStatus.completed,
                "outputs": list(outputs),
                "progress": JobProgress(stage=JobStatus.completed, percent=100.0, message=message),
                "active_prediction": None,
                "regenerating_scene_index": None,
            }
            if manifest:
                partial["manifest"] = {**cur.manifest, **manifest}
            partial.update(fields)
            return partial

        rec = await self.mutate(job_id, _complete)
        if rec is not None and rec.status == JobStatus.completed:
            logger.info("Job %s completed with %d output(s)", job_id, len(rec.outputs))
        return rec

    async def fail(
        self,
        job_id: str,
        reason: str,
        *,
        manifest: Optional[Dict[str, Any]] = None,
    ) -> Optional[JobRecord]:
        """Finalise as failed with a user-facing *reason*."""
        return await self.mutate(job_id, lambda cur: self._failure_partial(cur, reason, manifest))

    @staticmethod
    def _failure_partial(cur: JobRecord, reason: str, manifest: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        partial: Dict[str, Any] = {
            "status": JobStatus.failed,
            "error": reason,
            "outputs": [],
            "progress": cur.progress.model_copy(update={"stage": JobStatus.failed, "message": reason}),
            "active_prediction": None,
            "regenerating_scene_index": None,
        }
        if manifest:
            partial["manifest"] = {**cur.manifest, **manifest}
        return partial

    # ── Cancel ───────────────────────────────────────────────────────

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation.  Returns False for unknown or terminal jobs.

        The running pipeline observes the token and finalises the job
        itself; a job with no running pipeline is finalised here.  The
        external prediction is cancelled best-effort.
        """
        rec = await self.get(job_id)
        if rec is None or rec.is_terminal:
            return False
        rec = await self.update(job_id, {"cancel_requested": True}, event="cancelling")
        if rec is None or rec.is_terminal:
            return False

        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        if rec.active_prediction is not None and self._pipeline is not None:
            try:
                await self._pipeline.cancel_prediction(rec.active_prediction)
            except Exception as exc:
                logger.warning(
                    "Could not cancel prediction %s for job %s: %s",
                    rec.active_prediction.prediction_id, job_id, exc,
                )
        if not self.is_active(job_id):
            await self.fail(job_id, CANCELLED_REASON)
        logger.info("Cancellation requested for job %s", job_id)
        return True

    # ── Scene regeneration ───────────────────────────────────────────

    async def regenerate_scene(
        self, job_id: str, scene_index: int, prompt: Optional[str] = None
    ) -> Optional[JobRecord]:
        """Reopen a multi-scene video job to regenerate one scene and re-stitch.

        Returns None for unknown jobs.

        Raises
        ------
        InvalidRequestError
            Not a scene job, index out of range, or scenes still missing.
        JobBusyError
            The job's pipeline is still running.
        """
        rec = await self.get(job_id)
        if rec is None:
            return None
        total = rec.total_scenes
        if rec.job_type != JobType.video or total == 0:
            raise InvalidRequestError(f"Job {job_id} has no scenes to regenerate")
        if not 0 <= scene_index < total:
            raise InvalidRequestError(f"Scene index {scene_index} out of range (job has {total} scenes)")
        if self.is_active(job_id):
            raise JobBusyError(f"Job {job_id} is still running")
        if len(rec.scene_outputs) < total:
            raise InvalidRequestError("Every scene must finish before one can be regenerated")
        if prompt is not None and not prompt.strip():
            raise InvalidRequestError("Scene prompt cannot be empty")

        def _reopen(cur: JobRecord) -> Dict[str, Any]:
            scenes = [s.model_copy() for s in cur.scenes]
            updates: Dict[str, Any] = {
                "status": SceneStatus.pending, "progress": 0.0, "completed_at": None,
            }
            if prompt is not None:
                updates["prompt"] = prompt.strip()
            scenes[scene_index] = scenes[scene_index].model_copy(update=updates)
            manifest = dict(cur.manifest)
            if cur.outputs:
                manifest["previous_outputs"] = list(cur.outputs)
            return {
                "status": JobStatus.running,
                "outputs": [],
                "error": None,
                "cancel_requested": False,
                "scenes": scenes,
                "regenerating_scene_index": scene_index,
                "current_scene_index": scene_index,
                "manifest": manifest,
                "progress": JobProgress(
                    stage=JobStatus.running,
                    percent=0.0,
                    message=f"Regenerating scene {scene_index + 1} of {total}...",
                    current_step=scene_index + 1,
                    total_steps=total,
                ),
            }

        rec = await self.mutate(job_id, _reopen, event="regenerating", reopen=True)
        logger.info("Regenerating scene %d of job %s", scene_index + 1, job_id)
        self._start(job_id)
        return rec

    # ── Lifecycle ────────────────────────────────────────────────────

    async def recover(self) -> int:
        """Resume pipelines for jobs left unfinished by a previous process."""
        resumed = 0
        for rec in await self.store.list_unfinished():
            if self.is_active(rec.job_id):
                continue
            if rec.cancel_requested:
                await self.fail(rec.job_id, CANCELLED_REASON)
                continue
            logger.info("Resuming job %s (%s, %s)", rec.job_id, rec.job_type.value, rec.status.value)
            self._start(rec.job_id)
            resumed += 1
        return resumed

    async def shutdown(self) -> None:
        """Stop running pipelines without finalising their jobs."""
        tasks = [t for t in self._active_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._active_tasks.clear()
        self._tokens.clear()
