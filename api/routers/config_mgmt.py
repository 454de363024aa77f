"""Runtime config management endpoints."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from ..config import RuntimeConfig
from ..deps.auth import require_auth
from ..deps.providers import get_fallback_chain, get_runtime_config
from ..jobs.fallback import ModelFallbackChain
from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/config", tags=["config"])


def _annotated(value: Any, status: str, reason: str | None = None) -> Dict[str, Any]:
    """Build a single config entry with status annotation."""
    entry: Dict[str, Any] = {"value": value, "status": status}
    if reason:
        entry["reason"] = reason
    return entry


def _build_chain_status(chain: ModelFallbackChain) -> Dict[str, Any]:
    """Each media chain's backends in priority order, with availability."""
    out: Dict[str, Any] = {}
    for media in chain.media_kinds():
        out[media] = [
            _annotated(
                backend.name,
                "active" if backend.available() else "inactive",
                reason=None if backend.available() else "credentials not configured",
            )
            for backend in chain.backends(media)
        ]
    return out


@router.get("")
async def get_config(rc: RuntimeConfig = Depends(get_runtime_config)) -> ApiResponse:
    return ApiResponse.success(rc.get_adjustable())


@router.get("/validate")
async def validate_config_endpoint() -> ApiResponse:
    """Run config validation and return any issues found.

    Each issue has a ``level`` (WARNING or ERROR) and a ``message``
    describing what is wrong and how to fix it.
    """
    from ... import config as cfg

    issues = cfg.validate_config()
    return ApiResponse.success({
        "issues": issues,
        "count": len(issues),
        "errors": sum(1 for i in issues if i.get("level") == "ERROR"),
        "warnings": sum(1 for i in issues if i.get("level") == "WARNING"),
    })


@router.get("/backends")
async def get_backend_status(chain: ModelFallbackChain = Depends(get_fallback_chain)) -> ApiResponse:
    """Fallback chains with per-backend availability."""
    return ApiResponse.success(_build_chain_status(chain))


@router.patch("", dependencies=[Depends(require_auth)])
async def patch_config(
    updates: dict = Body(...),
    rc: RuntimeConfig = Depends(get_runtime_config),
) -> ApiResponse:
    try:
        new_state = rc.patch(updates)
    except (KeyError, ValueError) as exc:
        resp = ApiResponse.fail(str(exc))
        return JSONResponse(status_code=422, content=resp.model_dump())
    return ApiResponse.success(new_state)
