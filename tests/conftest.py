"""Shared test fixtures for the media_engine test suite."""
from __future__ import annotations

import asyncio
import itertools
from typing import Dict, List, Optional, Sequence

import pytest

from media_engine.api.jobs.exceptions import BackendFailure
from media_engine.api.services.stitching_service import StitchEntry
from media_engine.api.services.storage_service import StoredArtifact
from media_engine.backends.base import (
    BackendResponse,
    GenerationRequest,
    PredictionHandle,
    PredictionState,
    PredictionStatus,
)


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    aiosqlite worker threads and asyncio cleanup can occasionally block
    interpreter exit.  This watchdog ensures pytest exits within a few
    seconds of test completion.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Fakes ────────────────────────────────────────────────────────────


class FakeBackend:
    """Scriptable backend.

    ``outputs`` returns artifacts synchronously from ``submit``; otherwise
    ``submit`` hands out a handle and ``status`` walks through ``states``
    (the last state repeats).  ``error`` makes ``submit`` raise.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        name: str,
        media: str = "image",
        *,
        outputs: Optional[List[str]] = None,
        states: Sequence[str] = ("processing", "succeeded"),
        result: Sequence[str] = ("https://cdn.example/out.png",),
        error: Optional[Exception] = None,
        fail_reason: Optional[str] = None,
        available: bool = True,
    ) -> None:
        self.name = name
        self.media = media
        self.outputs = outputs
        self.states = list(states)
        self.result = list(result)
        self.error = error
        self.fail_reason = fail_reason
        self._available = available
        self.submitted: List[GenerationRequest] = []
        self.status_calls = 0
        self.cancelled: List[str] = []

    def available(self) -> bool:
        return self._available

    async def submit(self, request: GenerationRequest) -> BackendResponse:
        self.submitted.append(request)
        if self.error is not None:
            raise self.error
        if self.outputs is not None:
            return BackendResponse(backend=self.name, outputs=list(self.outputs))
        handle = PredictionHandle(prediction_id=f"{self.name}-{next(self._ids)}", backend=self.name, media=self.media)
        return BackendResponse(backend=self.name, handle=handle)

    async def status(self, handle: PredictionHandle) -> PredictionStatus:
        idx = min(self.status_calls, len(self.states) - 1)
        self.status_calls += 1
        return self.parse_status({"status": self.states[idx], "error": self.fail_reason})

    def parse_status(self, data: Dict) -> PredictionStatus:
        state = PredictionState(data.get("status", "processing"))
        if state == PredictionState.succeeded:
            urls = self.extract_urls(data.get("output")) or list(self.result)
            return PredictionStatus(state=state, urls=urls)
        if state == PredictionState.failed:
            return PredictionStatus(state=state, error=data.get("error") or "model crashed")
        return PredictionStatus(state=state)

    def extract_urls(self, output) -> List[str]:
        return [u for u in (output or []) if u]

    async def cancel(self, handle: PredictionHandle) -> None:
        self.cancelled.append(handle.prediction_id)


class FakeArtifacts:
    """ArtifactStore stand-in that 'archives' by rewriting URLs."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.persisted: List[Dict] = []

    async def persist(self, url, *, job_id, filename, owner_id=None, content_type=None, expires_in=None):
        if self.fail:
            raise BackendFailure("disk full")
        self.persisted.append({
            "url": url, "job_id": job_id, "filename": filename,
            "owner_id": owner_id, "content_type": content_type, "expires_in": expires_in,
        })
        path = f"{owner_id or 'anonymous'}/{job_id}/{filename}"
        return StoredArtifact(
            url=f"https://store.test/{path}", path=path,
            content_type=content_type or "application/octet-stream", size_bytes=1024,
        )

    async def persist_or_keep(self, url, **kwargs):
        try:
            return (await self.persist(url, **kwargs)).url
        except BackendFailure:
            return url


class FakeStitcher:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls: List[List[StitchEntry]] = []

    async def stitch(self, job_id, entries, owner_id=None):
        self.calls.append(list(entries))
        if self.error is not None:
            raise self.error
        return f"https://stitch.test/{job_id}/final.mp4"


async def wait_for_terminal(registry, job_id: str, timeout: float = 5.0):
    """Poll the registry until *job_id* completes or fails."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        rec = await registry.get(job_id)
        if rec is not None and rec.is_terminal and not registry.is_active(job_id):
            return rec
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} did not finish: {rec.status if rec else None}")
        await asyncio.sleep(0.005)


async def wait_until(predicate, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ── Engine fixtures ──────────────────────────────────────────────────


@pytest.fixture
def fast_polling(monkeypatch):
    """Shrink every poll interval so polled pipelines finish in milliseconds."""
    import media_engine.config as cfg

    for key in (
        "POLL_IMAGE_INTERVAL_S", "POLL_VIDEO_INTERVAL_S", "POLL_MESH_INTERVAL_S",
        "POLL_CAD_INITIAL_INTERVAL_S", "POLL_GRACE_PERIOD_S",
    ):
        monkeypatch.setattr(cfg, key, 0.001)
    monkeypatch.setattr(cfg, "POLL_CAD_MAX_INTERVAL_S", 0.002)
    return cfg


@pytest.fixture
async def store():
    from media_engine.api.jobs.store import JobStore

    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


class Engine:
    """Registry + dispatcher wired to fake services."""

    def __init__(self, registry, dispatcher, chain, artifacts, stitcher):
        self.registry = registry
        self.dispatcher = dispatcher
        self.chain = chain
        self.artifacts = artifacts
        self.stitcher = stitcher

    async def submit(self, **options):
        from media_engine.api.jobs.models import GenerationOptions

        return await self.registry.submit(GenerationOptions(**options))

    async def run(self, **options):
        job_id = await self.submit(**options)
        return await wait_for_terminal(self.registry, job_id)


@pytest.fixture
async def make_engine(store, fast_polling):
    """Factory: ``make_engine({"image": [FakeBackend(...)]}, ...)``."""
    from media_engine.api.jobs.dispatcher import PipelineDispatcher
    from media_engine.api.jobs.fallback import ModelFallbackChain
    from media_engine.api.jobs.notifier import UpdateNotifier
    from media_engine.api.jobs.poller import PredictionPoller
    from media_engine.api.jobs.registry import JobRegistry

    registries = []

    def _make(chains, *, artifacts=None, stitcher=None, max_queued=50, max_concurrent=4):
        registry = JobRegistry(store, UpdateNotifier(), max_concurrent=max_concurrent, max_queued=max_queued)
        chain = ModelFallbackChain(chains)
        artifacts = artifacts or FakeArtifacts()
        stitcher = stitcher or FakeStitcher()
        dispatcher = PipelineDispatcher(registry, chain, PredictionPoller(registry), artifacts, stitcher)
        registry.attach(dispatcher)
        registries.append(registry)
        return Engine(registry, dispatcher, chain, artifacts, stitcher)

    yield _make
    for registry in registries:
        await registry.shutdown()


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def api_backends():
    """Backends the test app's chains are built from; tests may tweak them."""
    return {
        "image": [FakeBackend("fake-image", "image", outputs=["https://cdn.example/img.png"])],
        "upscale": [FakeBackend("fake-upscale", "upscale", outputs=["https://cdn.example/big.png"])],
        "video": [FakeBackend("fake-video", "video", result=["https://cdn.example/clip.mp4"])],
        "mesh": [FakeBackend("fake-mesh", "mesh", result=["https://cdn.example/model.glb"])],
        "cad_mesh": [FakeBackend("fake-cad", "cad_mesh", result=["https://cdn.example/part.glb"])],
    }


@pytest.fixture
async def app(tmp_path, fast_polling, api_backends):
    """Create a test FastAPI app with a fresh per-test job store and fake backends."""
    import media_engine.api.deps.auth as _auth
    import media_engine.api.deps.providers as _prov
    from media_engine.api.config import ApiSettings
    from media_engine.api.jobs.fallback import ModelFallbackChain
    from media_engine.api.jobs.store import JobStore
    from media_engine.api.main import create_app

    # Disable auth for tests so job endpoints are accessible
    _orig_auth_enabled = _auth.API_AUTH_ENABLED
    _auth.API_AUTH_ENABLED = False

    settings = ApiSettings(job_db_path=str(tmp_path / "test_jobs.db"))

    store = JobStore(str(tmp_path / "test_jobs.db"))
    await store.initialize()

    # Inject into the provider module; the registry is built lazily from these
    _prov._job_store = store
    _prov._chain = ModelFallbackChain(api_backends)
    _prov._artifacts = FakeArtifacts()
    _prov._stitcher = FakeStitcher()

    application = create_app(settings)
    yield application

    # Cleanup
    _auth.API_AUTH_ENABLED = _orig_auth_enabled
    if _prov._job_registry is not None:
        await _prov._job_registry.shutdown()
    await store.close()
    _prov.reset_singletons()
    _prov.get_settings.cache_clear()
    _prov.get_runtime_config.cache_clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
