"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from ..config import ApiSettings, RuntimeConfig


@lru_cache
def get_settings() -> ApiSettings:
    return ApiSettings()


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons: initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_job_store = None
_notifier = None
_chain = None
_artifacts = None
_stitcher = None
_job_registry = None
_dispatcher = None


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().job_db_path)
    return _job_store


def get_notifier():
    """Return the singleton ``UpdateNotifier``."""
    global _notifier
    if _notifier is None:
        from ..jobs.notifier import UpdateNotifier

        _notifier = UpdateNotifier()
    return _notifier


def get_fallback_chain():
    """Return the singleton ``ModelFallbackChain`` built from backends.yaml."""
    global _chain
    if _chain is None:
        from ...backends.registry import build_chains
        from ..jobs.fallback import ModelFallbackChain

        settings = get_settings()
        _chain = ModelFallbackChain(build_chains(
            replicate_api_token=settings.replicate_api_token,
            gateway_api_key=settings.gateway_api_key,
            webhook_url=settings.webhook_url or None,
        ))
    return _chain


def get_artifact_store():
    """Return the singleton ``ArtifactStore`` over the local blob store."""
    global _artifacts
    if _artifacts is None:
        from ... import config as cfg
        from ..services.storage_service import ArtifactStore, LocalBlobStore

        settings = get_settings()
        blobs = LocalBlobStore(
            Path(settings.storage_dir) if settings.storage_dir else cfg.ARTIFACT_DIR,
            public_base_url=settings.public_base_url or cfg.STORAGE_PUBLIC_BASE_URL,
            bucket=cfg.STORAGE_BUCKET,
        )
        _artifacts = ArtifactStore(blobs, timeout_s=cfg.DOWNLOAD_TIMEOUT_S)
    return _artifacts


def get_stitcher():
    """Return the singleton stitching client."""
    global _stitcher
    if _stitcher is None:
        from ... import config as cfg
        from ..services.stitching_service import HttpStitcher

        _stitcher = HttpStitcher(
            get_settings().stitch_service_url or cfg.STITCH_SERVICE_URL,
            timeout_s=cfg.STITCH_TIMEOUT_S,
        )
    return _stitcher


def get_job_registry():
    """Return the singleton ``JobRegistry`` with its dispatcher attached."""
    global _job_registry, _dispatcher
    if _job_registry is None:
        from ... import config as cfg
        from ..jobs.dispatcher import PipelineDispatcher
        from ..jobs.poller import PredictionPoller
        from ..jobs.registry import JobRegistry

        registry = JobRegistry(
            get_job_store(),
            get_notifier(),
            max_concurrent=cfg.MAX_CONCURRENT_JOBS,
            max_queued=cfg.MAX_QUEUED_JOBS,
        )
        _dispatcher = PipelineDispatcher(
            registry,
            get_fallback_chain(),
            PredictionPoller(registry),
            get_artifact_store(),
            get_stitcher(),
        )
        registry.attach(_dispatcher)
        _job_registry = registry
    return _job_registry


def get_dispatcher():
    """Return the ``PipelineDispatcher`` attached to the job registry."""
    get_job_registry()
    return _dispatcher


def reset_singletons() -> None:
    """Forget every lazy singleton (tests, and app shutdown)."""
    global _job_store, _notifier, _chain, _artifacts, _stitcher, _job_registry, _dispatcher
    _job_store = _notifier = _chain = _artifacts = _stitcher = _job_registry = _dispatcher = None
