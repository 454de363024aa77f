"""Service health endpoint."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from ... import __version__
from ..deps.providers import get_fallback_chain, get_job_registry
from ..jobs.fallback import ModelFallbackChain
from ..jobs.registry import JobRegistry
from ..schemas.envelope import ApiResponse

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def quick_health(
    registry: JobRegistry = Depends(get_job_registry),
    chain: ModelFallbackChain = Depends(get_fallback_chain),
) -> ApiResponse:
    t0 = time.monotonic()
    chains = {
        media: sum(1 for b in chain.backends(media) if b.available())
        for media in chain.media_kinds()
    }
    status = "ok" if chains and all(chains.values()) else "degraded"
    data = {
        "status": status,
        "version": __version__,
        "pending_jobs": registry.pending_count,
        "available_backends": chains,
    }
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(data, elapsed_ms=elapsed)
