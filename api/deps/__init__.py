"""Dependency injection providers."""
from .auth import require_auth
from .providers import (
    get_artifact_store,
    get_dispatcher,
    get_fallback_chain,
    get_job_registry,
    get_job_store,
    get_notifier,
    get_runtime_config,
    get_settings,
    get_stitcher,
)

__all__ = [
    "get_artifact_store",
    "get_dispatcher",
    "get_fallback_chain",
    "get_job_registry",
    "get_job_store",
    "get_notifier",
    "get_runtime_config",
    "get_settings",
    "get_stitcher",
    "require_auth",
]
