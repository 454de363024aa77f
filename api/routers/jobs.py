"""Job management endpoints."""
from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from ..deps.auth import owner_id, require_auth
from ..deps.providers import get_job_registry
from ..errors import JobNotFoundError
from ..jobs.exceptions import InvalidRequestError
from ..jobs.models import GenerationOptions, JobRecord, JobStatus
from ..jobs.registry import JobRegistry
from ..schemas.envelope import ApiResponse
from ..schemas.generation import JobCreated, JobView, SceneRegenerateRequest

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _not_found(job_id: str) -> None:
    """Raise JobNotFoundError to be handled by the global error handler."""
    raise JobNotFoundError(f"Job '{job_id}' not found")


async def _require_job(registry: JobRegistry, job_id: str) -> JobRecord:
    rec = await registry.get(job_id)
    if rec is None:
        _not_found(job_id)
    return rec


@router.post("", dependencies=[Depends(require_auth)])
async def submit_job(
    request: Request,
    body: dict = Body(...),
    registry: JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    caller = owner_id(request)
    if caller and not body.get("owner_id"):
        body = {**body, "owner_id": caller}
    try:
        options = GenerationOptions.model_validate(body)
    except ValidationError as exc:
        raise InvalidRequestError(
            "; ".join(f"{'.'.join(str(p) for p in e['loc']) or 'body'}: {e['msg']}" for e in exc.errors())
        ) from exc
    job_id = await registry.submit(options)
    created = JobCreated(job_id=job_id, job_type=options.type)
    return ApiResponse.success(created.model_dump(mode="json"), pending_jobs=registry.pending_count)


@router.get("")
async def list_jobs(
    limit: int = 50,
    status: Optional[JobStatus] = None,
    registry: JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    jobs = await registry.list(limit=limit, status=status)
    data = [JobView.from_record(j).model_dump(mode="json") for j in jobs]
    return ApiResponse.success(data, total=len(data))


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    rec = await _require_job(registry, job_id)
    return ApiResponse.success(JobView.from_record(rec).model_dump(mode="json"))


@router.get("/{job_id}/events")
async def job_events(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),
):
    rec = await _require_job(registry, job_id)

    async def _generate():
        async for event in registry.notifier.stream(job_id, initial=rec):
            yield {"event": event.get("event", "message"), "data": json.dumps(event)}

    return EventSourceResponse(_generate())


@router.post("/{job_id}/cancel", dependencies=[Depends(require_auth)])
async def cancel_job(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    await _require_job(registry, job_id)
    cancelled = await registry.cancel(job_id)
    return ApiResponse.success({"cancelled": cancelled})


@router.post("/{job_id}/scenes/{scene_index}/regenerate", dependencies=[Depends(require_auth)])
async def regenerate_scene(
    job_id: str,
    scene_index: int,
    body: Optional[SceneRegenerateRequest] = Body(default=None),
    registry: JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    prompt = body.prompt if body is not None else None
    rec = await registry.regenerate_scene(job_id, scene_index, prompt)
    if rec is None:
        _not_found(job_id)
    return ApiResponse.success(JobView.from_record(rec).model_dump(mode="json"))
