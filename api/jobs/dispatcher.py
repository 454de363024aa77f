"""Pipeline dispatcher: routes each job to its media pipeline.

Image, video, 3D and CAD jobs share one skeleton: mark the job running,
run the media steps through :class:`StepRunner`, archive the artifacts,
then complete.  Every failure ends up in :meth:`PipelineDispatcher.run`,
which writes a user-facing reason to the job.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ... import config as cfg
from ...backends.base import GenerationRequest, PredictionHandle, PredictionState
from ...backends.classify import is_content_policy_message
from ...backends.output_adapters import MODEL_EXPORT_FORMATS, detect_model_format, model_content_type
from ..services.stitching_service import Stitcher
from ..services.storage_service import ArtifactStore
from .cancellation import CancelToken
from .exceptions import (
    CANCELLED_REASON,
    BackendFailure,
    ContentPolicyError,
    GenerationError,
    JobCancelled,
    JobFinalizedElsewhere,
)
from .fallback import ModelFallbackChain
from .models import (
    GenerationOptions,
    JobRecord,
    JobStatus,
    JobType,
    PredictionRef,
    UserFileRecord,
    VideoMode,
)
from .poller import PredictionPoller
from .registry import JobRegistry
from .scenes import SceneOrchestrator
from .steps import StepRunner

logger = logging.getLogger(__name__)

# Stages whose prediction output is the job's final artifact; the
# completion webhook may finalise these directly.
WEBHOOK_FINAL_STAGES = ("video", "mesh")


def upscale_factor_for(width: int, height: int, requested: Optional[int] = None) -> int:
    """Smallest configured factor that lifts the default render to the target size."""
    if requested:
        return requested
    base = max(cfg.DEFAULT_IMAGE_WIDTH, cfg.DEFAULT_IMAGE_HEIGHT)
    target = max(width, height)
    for factor in sorted(cfg.UPSCALE_FACTORS):
        if base * factor >= target:
            return factor
    return max(cfg.UPSCALE_FACTORS)


def needs_enhancement(opts: GenerationOptions) -> bool:
    if opts.upscale_factor:
        return True
    width = opts.width or cfg.DEFAULT_IMAGE_WIDTH
    height = opts.height or cfg.DEFAULT_IMAGE_HEIGHT
    return (width, height) != (cfg.DEFAULT_IMAGE_WIDTH, cfg.DEFAULT_IMAGE_HEIGHT)


class PipelineDispatcher:
    """Runs the pipeline for a job's type under its cancel token."""

    def __init__(
        self,
        registry: JobRegistry,
        chain: ModelFallbackChain,
        poller: PredictionPoller,
        artifacts: ArtifactStore,
        stitcher: Stitcher,
    ) -> None:
        self.registry = registry
        self.chain = chain
        self.artifacts = artifacts
        self.steps = StepRunner(registry, chain, poller)
        self.scenes = SceneOrchestrator(registry, self.steps, artifacts, stitcher)
        self._pipelines = {
            JobType.image: self._run_image,
            JobType.video: self._run_video,
            JobType.three_d: self._run_mesh,
            JobType.cad: self._run_mesh,
        }

    async def run(self, job_id: str, token: CancelToken) -> None:
        rec = await self.registry.get(job_id)
        if rec is None or rec.is_terminal:
            return
        logger.info("Running %s job %s", rec.job_type.value, job_id)
        try:
            token.raise_if_cancelled()
            if rec.status == JobStatus.queued:
                await self.registry.set_stage(job_id, JobStatus.running, 0.0, "Starting...")
            await self._pipelines[rec.job_type](rec, token)
        except JobFinalizedElsewhere:
            logger.info("Job %s was finalised by another writer", job_id)
        except JobCancelled:
            logger.info("Job %s cancelled", job_id)
            await self.registry.fail(job_id, CANCELLED_REASON)
        except GenerationError as exc:
            logger.warning("Job %s failed: %s", job_id, exc)
            await self.registry.fail(job_id, str(exc))
        except Exception as exc:
            logger.error("Job %s failed unexpectedly", job_id, exc_info=True)
            await self.registry.fail(job_id, f"Unexpected error: {exc}")

    async def cancel_prediction(self, ref: PredictionRef) -> None:
        backend = self.chain.find(ref.backend)
        if backend is None:
            return
        await backend.cancel(PredictionHandle(prediction_id=ref.prediction_id, backend=ref.backend, media=ref.media))

    # ── Image ────────────────────────────────────────────────────────

    async def _run_image(self, rec: JobRecord, token: CancelToken) -> None:
        job_id, opts = rec.job_id, rec.options
        # Primary images are checkpointed so a resumed job goes straight
        # back to enhancement.
        urls = list(rec.manifest.get("source_image_urls") or [])
        backend = rec.manifest.get("image_backend", "")
        if not urls:
            await self.registry.set_stage(job_id, JobStatus.running, 10.0, "Generating image...")
            request = GenerationRequest(
                prompt=opts.prompt,
                negative_prompt=opts.negative_prompt,
                width=opts.width or cfg.DEFAULT_IMAGE_WIDTH,
                height=opts.height or cfg.DEFAULT_IMAGE_HEIGHT,
                num_outputs=opts.num_images,
                seed=opts.seed,
                steps=opts.steps,
                guidance=opts.cfg_scale,
                aspect_ratio=opts.aspect_ratio,
                reference_images=list(opts.reference_images),
            )
            step = await self.steps.generate(job_id, "image", request, token, stage="image", progress=(10.0, 60.0))
            urls = step.urls[: opts.num_images]
            backend = step.backend
            await self.registry.merge_manifest(job_id, source_image_urls=urls, image_backend=backend)
        token.raise_if_cancelled()

        manifest: Dict[str, Any] = {"image_backend": backend}
        if needs_enhancement(opts):
            factor = upscale_factor_for(
                opts.width or cfg.DEFAULT_IMAGE_WIDTH,
                opts.height or cfg.DEFAULT_IMAGE_HEIGHT,
                opts.upscale_factor,
            )
            urls = await self._enhance(rec, urls, factor, token)
            manifest["upscale_factor"] = factor

        await self.registry.set_stage(job_id, JobStatus.encoding, 90.0, "Saving images...")
        stored: List[str] = []
        for i, url in enumerate(urls):
            stored.append(await self.artifacts.persist_or_keep(
                url, job_id=job_id, filename=f"image_{i}", owner_id=rec.owner_id,
            ))
        await self.registry.complete(job_id, stored, manifest=manifest)

    async def _enhance(self, rec: JobRecord, urls: List[str], factor: int, token: CancelToken) -> List[str]:
        """Upscale each image; an image that fails to upscale is kept as-is.

        Finished slots are checkpointed in ``enhanced_image_urls``; a resumed
        job continues from the first unfinished one.
        """
        job_id = rec.job_id
        total = len(urls)
        enhanced: List[str] = list(rec.manifest.get("enhanced_image_urls") or [])[:total]
        for i in range(len(enhanced), total):
            url = urls[i]
            token.raise_if_cancelled()
            await self.registry.set_stage(
                job_id, JobStatus.upscaling, 60.0 + 25.0 * i / total,
                f"Enhancing image {i + 1} of {total} ({factor}x)...",
            )
            source = url
            if url.startswith("data:"):
                # Prediction models need a fetchable URL.
                source = await self.artifacts.persist_or_keep(
                    url, job_id=job_id, filename=f"source_{i}", owner_id=rec.owner_id,
                )
            try:
                step = await self.steps.generate(
                    job_id, "upscale", GenerationRequest(image_url=source, scale=factor), token,
                    stage="upscale", index=i,
                )
                enhanced.append(step.url)
            except (JobCancelled, JobFinalizedElsewhere):
                raise
            except GenerationError as exc:
                logger.warning("Job %s: enhancement of image %d failed, keeping original: %s", job_id, i, exc)
                enhanced.append(url)
            await self.registry.merge_manifest(job_id, enhanced_image_urls=list(enhanced))
        return enhanced

    # ── Video ────────────────────────────────────────────────────────

    async def _run_video(self, rec: JobRecord, token: CancelToken) -> None:
        opts = rec.options
        if opts.video_mode == VideoMode.short and not opts.scene_prompts:
            await self._run_single_video(rec, token)
            return
        await self.scenes.run(rec.job_id, token)

    async def _run_single_video(self, rec: JobRecord, token: CancelToken) -> None:
        job_id, opts = rec.job_id, rec.options
        await self.registry.set_stage(job_id, JobStatus.running, 10.0, "Generating video...")
        request = GenerationRequest(
            prompt=opts.prompt,
            negative_prompt=opts.negative_prompt,
            duration=opts.duration or cfg.DEFAULT_SCENE_DURATION,
            fps=opts.fps,
            aspect_ratio=opts.aspect_ratio,
            seed=opts.seed,
            image_url=opts.image_url,
        )
        step = await self.steps.generate(job_id, "video", request, token, stage="video", progress=(10.0, 85.0))
        token.raise_if_cancelled()
        await self._archive_video(rec, step.url, backend=step.backend)

    async def _archive_video(self, rec: JobRecord, video_url: str, *, backend: str) -> None:
        job_id = rec.job_id
        await self.registry.set_stage(job_id, JobStatus.encoding, 90.0, "Archiving video...")
        try:
            stored = await self.artifacts.persist(
                video_url, job_id=job_id, filename="video.mp4", owner_id=rec.owner_id, content_type="video/mp4",
            )
        except (BackendFailure, OSError, ValueError) as exc:
            raise BackendFailure(f"Video archiving failed: {exc}") from exc
        await self.registry.complete(
            job_id, [stored.url], message="Video complete!", manifest={"video_backend": backend},
        )

    # ── 3D / CAD ─────────────────────────────────────────────────────

    async def _run_mesh(self, rec: JobRecord, token: CancelToken) -> None:
        job_id, opts = rec.job_id, rec.options
        is_cad = rec.job_type == JobType.cad
        reference = rec.manifest.get("reference_image_url") or opts.image_url

        if not reference:
            await self.registry.set_stage(job_id, JobStatus.running, 10.0, "Generating reference image...")
            if is_cad:
                prompt = f"{opts.prompt}{cfg.CAD_PROMPT_SUFFIX}{cfg.CAD_REFERENCE_SUFFIX}"
            else:
                prompt = f"{opts.prompt}{cfg.THREE_D_REFERENCE_SUFFIX}"
            request = GenerationRequest(
                prompt=prompt,
                negative_prompt=opts.negative_prompt,
                width=cfg.DEFAULT_IMAGE_WIDTH,
                height=cfg.DEFAULT_IMAGE_HEIGHT,
                seed=opts.seed,
            )
            step = await self.steps.generate(
                job_id, "image", request, token, stage="reference", progress=(10.0, 40.0),
            )
            reference = step.url
            if reference.startswith("data:"):
                reference = await self.artifacts.persist_or_keep(
                    reference, job_id=job_id, filename="reference", owner_id=rec.owner_id,
                )
            await self.registry.merge_manifest(job_id, reference_image_url=reference)
        token.raise_if_cancelled()

        media = "cad_mesh" if is_cad else "mesh"
        message = "Generating CAD-quality mesh..." if is_cad else "Converting image to 3D mesh..."
        await self.registry.set_stage(job_id, JobStatus.upscaling, 50.0, message)
        request = GenerationRequest(image_url=reference, seed=opts.seed, steps=opts.steps)
        step = await self.steps.generate(job_id, media, request, token, stage="mesh", progress=(50.0, 85.0))
        token.raise_if_cancelled()
        await self._archive_mesh(rec, step.url, backend=step.backend)

    async def _archive_mesh(self, rec: JobRecord, mesh_url: str, *, backend: str) -> None:
        job_id = rec.job_id
        ext = detect_model_format(mesh_url)
        await self.registry.set_stage(job_id, JobStatus.encoding, 90.0, "Archiving model...")
        try:
            stored = await self.artifacts.persist(
                mesh_url,
                job_id=job_id,
                filename=f"model.{ext}",
                owner_id=rec.owner_id,
                content_type=model_content_type(ext),
                expires_in=cfg.SIGNED_URL_TTL_S,
            )
        except (BackendFailure, OSError, ValueError) as exc:
            raise BackendFailure(f"Model archiving failed: {exc}") from exc
        await self.registry.store.record_file(UserFileRecord(
            owner_id=rec.owner_id,
            job_id=job_id,
            file_url=stored.url,
            file_type=rec.job_type.value,
            file_size_bytes=stored.size_bytes,
            expires_at=(datetime.now(timezone.utc) + timedelta(seconds=cfg.SIGNED_URL_TTL_S)).isoformat(),
        ))
        await self.registry.complete(
            job_id,
            [stored.url],
            message="3D model complete!" if rec.job_type == JobType.three_d else "CAD model complete!",
            manifest={
                "model_format": ext,
                "export_formats": list(MODEL_EXPORT_FORMATS),
                "source_url": mesh_url,
                "mesh_backend": backend,
            },
        )

    # ── Webhook finalisation ─────────────────────────────────────────

    async def finalize_from_webhook(self, payload: Dict[str, Any]) -> Optional[JobRecord]:
        """Finalise a job from a completion webhook for its active prediction.

        Only predictions whose output is the job's final artifact (single
        shot video, mesh conversion) are finalised here; for every other
        stage the running pipeline's poller picks the result up.  Returns
        the updated record, or None when the payload was not actionable.
        """
        prediction_id = payload.get("id")
        if not prediction_id:
            return None
        rec = await self.registry.store.find_by_prediction(str(prediction_id))
        if rec is None or rec.is_terminal or rec.active_prediction is None:
            return None
        ref = rec.active_prediction
        if ref.stage not in WEBHOOK_FINAL_STAGES or (ref.stage == "video" and rec.scenes):
            return None
        backend = self.chain.find(ref.backend)
        parse = getattr(backend, "parse_status", None)
        if parse is None:
            return None

        status = parse(payload)
        actionable = (
            (status.state == PredictionState.succeeded and status.urls)
            or status.state in (PredictionState.failed, PredictionState.canceled)
        )
        if not actionable:
            return None
        # Claim before the slow archive so a poller that sees the same
        # result backs off instead of archiving a second copy.
        if not await self.registry.claim_prediction(rec.job_id, ref.prediction_id):
            logger.info("Prediction %s for job %s already handled", prediction_id, rec.job_id)
            return None

        if status.state == PredictionState.succeeded:
            logger.info("Webhook finalising job %s from prediction %s", rec.job_id, prediction_id)
            try:
                if ref.stage == "mesh":
                    await self._archive_mesh(rec, status.urls[0], backend=ref.backend)
                else:
                    await self._archive_video(rec, status.urls[0], backend=ref.backend)
            except GenerationError as exc:
                await self.registry.fail(rec.job_id, str(exc))
        elif status.state == PredictionState.failed:
            if status.error and is_content_policy_message(status.error):
                reason = str(ContentPolicyError())
            else:
                reason = f"Generation failed: {status.error or 'Prediction failed'}"
            await self.registry.fail(rec.job_id, reason)
        else:
            await self.registry.fail(
                rec.job_id,
                CANCELLED_REASON if rec.cancel_requested else "Prediction was cancelled by the provider",
            )
        return await self.registry.get(rec.job_id)
