"""Multi-scene video orchestration: per-scene generation, regeneration, stitching."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from ...backends.base import GenerationRequest
from ..services.stitching_service import StitchEntry, Stitcher
from ..services.storage_service import ArtifactStore
from .cancellation import CancelToken
from .exceptions import BackendFailure, GenerationError
from .models import JobRecord, JobStatus, SceneState, SceneStatus, utcnow
from .registry import JobRegistry
from .scene_splitter import split_prompt
from .steps import StepRunner

logger = logging.getLogger(__name__)

# Scene generation fills 5-85%; stitching runs at 90%.
_SCENES_START = 5.0
_SCENES_SPAN = 80.0
_STITCH_PERCENT = 90.0


class SceneOrchestrator:
    """Generates a video job's scenes in order, then stitches them.

    ``scene_outputs[i]`` is scene *i*'s archived clip.  Generation resumes
    from the first missing clip, so a restarted job never redoes finished
    scenes.  A job reopened for regeneration produces only the scene at
    ``regenerating_scene_index`` and re-stitches.
    """

    def __init__(
        self,
        registry: JobRegistry,
        steps: StepRunner,
        artifacts: ArtifactStore,
        stitcher: Stitcher,
    ) -> None:
        self.registry = registry
        self.steps = steps
        self.artifacts = artifacts
        self.stitcher = stitcher

    async def run(self, job_id: str, token: CancelToken) -> None:
        rec = await self._ensure_scenes(job_id)
        total = rec.total_scenes

        if rec.regenerating_scene_index is not None:
            await self._generate_scene(rec, rec.regenerating_scene_index, token, replace=True)
        else:
            for index in range(len(rec.scene_outputs), total):
                token.raise_if_cancelled()
                await self._generate_scene(rec, index, token, replace=False)

        token.raise_if_cancelled()
        rec = await self.registry.get(job_id)
        if rec is None or rec.is_terminal:
            return
        if total == 1:
            await self.registry.complete(job_id, [rec.scene_outputs[0]], message="Video complete!")
            return
        await self._stitch(rec)

    async def _ensure_scenes(self, job_id: str) -> JobRecord:
        """Plan the scene list once; later runs reuse it."""
        rec = await self.registry.get(job_id)
        if rec.scenes:
            return rec
        opts = rec.options
        duration = opts.duration or self._default_duration()
        manifest: Dict[str, Any] = {}
        if opts.scene_prompts:
            prompts = list(opts.scene_prompts)
        else:
            split = split_prompt(opts.prompt, duration)
            prompts = split.scenes
            manifest["base_context"] = split.base_context
            manifest["auto_split"] = True
        scenes = [SceneState(order=i, prompt=p) for i, p in enumerate(prompts)]
        manifest["scene_duration"] = duration

        def _plan(cur: JobRecord) -> Dict[str, Any]:
            return {"scenes": scenes, "manifest": {**cur.manifest, **manifest}}

        rec = await self.registry.mutate(job_id, _plan)
        logger.info("Job %s planned %d scene(s)", job_id, len(scenes))
        return rec

    async def _generate_scene(self, rec: JobRecord, index: int, token: CancelToken, *, replace: bool) -> None:
        job_id = rec.job_id
        total = rec.total_scenes
        scene = rec.scenes[index]
        opts = rec.options
        start = _SCENES_START + _SCENES_SPAN * index / total
        end = _SCENES_START + _SCENES_SPAN * (index + 1) / total
        verb = "Regenerating" if replace else "Generating"

        def _begin(cur: JobRecord) -> Dict[str, Any]:
            scenes = [s.model_copy() for s in cur.scenes]
            scenes[index] = scenes[index].model_copy(update={
                "status": SceneStatus.running, "started_at": utcnow(), "progress": 0.0,
            })
            return {
                "status": JobStatus.running,
                "scenes": scenes,
                "current_scene_index": index,
                "progress": cur.progress.model_copy(update={
                    "stage": JobStatus.running,
                    "percent": start,
                    "message": f"{verb} scene {index + 1} of {total}...",
                    "current_step": index + 1,
                    "total_steps": total,
                }),
            }

        await self.registry.mutate(job_id, _begin)

        request = GenerationRequest(
            prompt=scene.prompt,
            negative_prompt=opts.negative_prompt,
            duration=opts.duration or self._default_duration(),
            fps=opts.fps,
            aspect_ratio=opts.aspect_ratio,
            seed=opts.seed + index if opts.seed is not None else None,
        )
        try:
            step = await self.steps.generate(
                job_id, "video", request, token, stage="video", index=index, progress=(start, end),
            )
            token.raise_if_cancelled()
            try:
                clip_url = (await self.artifacts.persist(
                    step.url, job_id=job_id, filename=f"scene_{index}.mp4",
                    owner_id=rec.owner_id, content_type="video/mp4",
                )).url
            except (BackendFailure, OSError, ValueError) as exc:
                raise BackendFailure(f"Scene {index + 1} archiving failed: {exc}") from exc
        except GenerationError:
            await self._reset_scene(job_id, index, replace=replace)
            raise

        def _finish(cur: JobRecord) -> Dict[str, Any]:
            outputs = list(cur.scene_outputs)
            if replace and index < len(outputs):
                outputs[index] = clip_url
            elif index == len(outputs):
                outputs.append(clip_url)
            else:
                raise GenerationError(
                    f"Scene {index + 1} finished out of order ({len(outputs)} clips recorded)"
                )
            scenes = [s.model_copy() for s in cur.scenes]
            scenes[index] = scenes[index].model_copy(update={
                "status": SceneStatus.completed, "progress": 100.0,
                "video_url": clip_url, "completed_at": utcnow(),
            })
            return {
                "scene_outputs": outputs,
                "scenes": scenes,
                "progress": cur.progress.model_copy(update={"percent": end}),
            }

        await self.registry.mutate(job_id, _finish)
        logger.info("Job %s scene %d/%d ready (%s)", job_id, index + 1, total, step.backend)

    async def _reset_scene(self, job_id: str, index: int, *, replace: bool) -> None:
        """Take a scene out of ``running`` after its generation failed.

        A scene being regenerated falls back to its previous clip; any
        other scene goes back to ``pending``.  Runs before the job itself
        is failed, since terminal jobs no longer accept writes.
        """
        def _reset(cur: JobRecord) -> Dict[str, Any]:
            scenes = [s.model_copy() for s in cur.scenes]
            if replace and index < len(cur.scene_outputs):
                updates: Dict[str, Any] = {
                    "status": SceneStatus.completed, "progress": 100.0,
                    "video_url": cur.scene_outputs[index],
                }
            else:
                updates = {"status": SceneStatus.pending, "progress": 0.0, "started_at": None}
            scenes[index] = scenes[index].model_copy(update=updates)
            return {"scenes": scenes}

        await self.registry.mutate(job_id, _reset)

    async def _stitch(self, rec: JobRecord) -> None:
        job_id = rec.job_id
        total = rec.total_scenes
        await self.registry.set_stage(job_id, JobStatus.encoding, _STITCH_PERCENT, f"Stitching {total} scenes...")
        duration = rec.manifest.get("scene_duration") or self._default_duration()
        entries: List[StitchEntry] = [
            StitchEntry(
                video_url=rec.scene_outputs[i],
                prompt=scene.prompt,
                duration=float(duration),
                order=scene.order,
                transition=self._default_transition(),
            )
            for i, scene in enumerate(rec.scenes)
        ]
        try:
            url = await self.stitcher.stitch(job_id, entries, owner_id=rec.owner_id)
        except (GenerationError, httpx.HTTPError) as exc:
            # Scene clips stay on the job so a retry only needs to re-stitch.
            logger.warning("Stitching failed for job %s: %s", job_id, exc)
            await self.registry.fail(job_id, f"Stitching failed: {exc}")
            return
        await self.registry.complete(job_id, [url], message="Video complete!", manifest={"stitched": True})

    @staticmethod
    def _default_duration() -> int:
        from ... import config as cfg

        return cfg.DEFAULT_SCENE_DURATION

    @staticmethod
    def _default_transition() -> str:
        from ... import config as cfg

        return cfg.STITCH_DEFAULT_TRANSITION
