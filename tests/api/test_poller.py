"""Tests for the prediction polling loop."""
import asyncio

import pytest

from conftest import FakeBackend
from media_engine.api.jobs.cancellation import CancelToken
from media_engine.api.jobs.exceptions import BackendFailure
from media_engine.api.jobs.models import GenerationOptions, JobRecord, JobStatus
from media_engine.api.jobs.poller import PollOutcomeKind, PollPolicy, PredictionPoller, policy_for
from media_engine.backends.base import PredictionHandle


class _Jobs:
    """Minimal JobLookup backed by a dict."""

    def __init__(self, status=JobStatus.running):
        opts = GenerationOptions(type="video", prompt="waves")
        self.rec = JobRecord(job_id="job-1", job_type=opts.type, options=opts, status=status)
        self.missing = False

    async def get(self, job_id):
        return None if self.missing else self.rec


def _policy(**kw):
    kw.setdefault("interval_s", 0.001)
    kw.setdefault("max_attempts", 10)
    kw.setdefault("grace_period_s", 0.001)
    return PollPolicy(**kw)


def _handle(backend):
    return PredictionHandle(prediction_id="p-1", backend=backend.name, media=backend.media)


@pytest.mark.asyncio
async def test_succeeds_after_processing():
    backend = FakeBackend("vid", "video", states=["starting", "processing", "succeeded"],
                          result=["https://cdn/v.mp4"])
    seen = []

    async def hook(status, attempt):
        seen.append(status.state.value)

    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(), on_status=hook,
    )
    assert outcome.kind == PollOutcomeKind.succeeded
    assert outcome.result == "https://cdn/v.mp4"
    assert outcome.attempts == 3
    assert seen == ["starting", "processing", "succeeded"]


@pytest.mark.asyncio
async def test_failure_flags_content_policy():
    backend = FakeBackend("img", states=["failed"], fail_reason="NSFW content detected")
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.failed
    assert outcome.content_policy is True


@pytest.mark.asyncio
async def test_plain_failure_is_not_content_policy():
    backend = FakeBackend("img", states=["failed"], fail_reason="CUDA out of memory")
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.failed
    assert outcome.content_policy is False
    assert outcome.reason == "CUDA out of memory"


@pytest.mark.asyncio
async def test_times_out_after_max_attempts():
    backend = FakeBackend("mesh", "mesh", states=["processing"])
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(max_attempts=4),
    )
    assert outcome.kind == PollOutcomeKind.timed_out
    assert backend.status_calls == 4
    assert "4 status checks" in outcome.reason


@pytest.mark.asyncio
async def test_wall_clock_deadline():
    now = [0.0]

    def clock():
        now[0] += 5.0
        return now[0]

    backend = FakeBackend("mesh", "mesh", states=["processing"])
    outcome = await PredictionPoller(_Jobs(), clock=clock).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(),
        policy=_policy(max_attempts=1000, deadline_s=20.0),
    )
    assert outcome.kind == PollOutcomeKind.timed_out
    assert backend.status_calls < 10


@pytest.mark.asyncio
async def test_cancel_interrupts_wait():
    backend = FakeBackend("vid", "video", states=["processing"])
    token = CancelToken()
    poller = PredictionPoller(_Jobs())

    task = asyncio.create_task(poller.wait(
        _handle(backend), backend, job_id="job-1", token=token,
        policy=_policy(interval_s=30.0, max_attempts=5),
    ))
    await asyncio.sleep(0.01)
    token.cancel()
    outcome = await asyncio.wait_for(task, timeout=1.0)
    assert outcome.kind == PollOutcomeKind.cancelled
    assert backend.status_calls == 0


@pytest.mark.asyncio
async def test_externally_completed_job_stops_polling():
    jobs = _Jobs()
    jobs.rec = jobs.rec.model_copy(update={"status": JobStatus.completed, "outputs": ["https://store/v.mp4"]})
    backend = FakeBackend("vid", "video", states=["processing"])
    outcome = await PredictionPoller(jobs).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.succeeded
    assert outcome.external is True
    assert outcome.urls == ["https://store/v.mp4"]
    assert backend.status_calls == 0


@pytest.mark.asyncio
async def test_missing_job_is_treated_as_cancelled():
    jobs = _Jobs()
    jobs.missing = True
    backend = FakeBackend("vid", "video", states=["processing"])
    outcome = await PredictionPoller(jobs).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.cancelled


@pytest.mark.asyncio
async def test_success_without_output_gets_grace_then_fails():
    backend = FakeBackend("mesh", "mesh", states=["succeeded"], result=[])
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(grace_attempts=2),
    )
    assert outcome.kind == PollOutcomeKind.failed
    assert "no output" in outcome.reason


@pytest.mark.asyncio
async def test_transient_status_errors_are_retried():
    backend = FakeBackend("vid", "video", states=["succeeded"], result=["https://cdn/v.mp4"])
    real_status = backend.status
    calls = {"n": 0}

    async def flaky(handle):
        calls["n"] += 1
        if calls["n"] < 3:
            raise BackendFailure("502 bad gateway")
        return await real_status(handle)

    backend.status = flaky
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.succeeded
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_provider_cancel_without_user_cancel_is_failure():
    backend = FakeBackend("vid", "video", states=["canceled"])
    outcome = await PredictionPoller(_Jobs()).wait(
        _handle(backend), backend, job_id="job-1", token=CancelToken(), policy=_policy(),
    )
    assert outcome.kind == PollOutcomeKind.failed


def test_backoff_interval_is_capped():
    policy = PollPolicy(interval_s=2.0, max_attempts=120, backoff_factor=1.25, max_interval_s=10.0)
    assert policy.interval_for(0) == 2.0
    assert policy.interval_for(1) == pytest.approx(2.5)
    assert policy.interval_for(2) == pytest.approx(3.125)
    assert policy.interval_for(50) == 10.0


def test_fixed_interval_policy():
    policy = PollPolicy(interval_s=5.0, max_attempts=120)
    assert {policy.interval_for(n) for n in range(10)} == {5.0}


def test_policy_for_reads_config():
    import media_engine.config as cfg

    cad = policy_for("cad_mesh")
    assert cad.backoff_factor == cfg.POLL_CAD_BACKOFF_FACTOR
    assert cad.max_interval_s == cfg.POLL_CAD_MAX_INTERVAL_S
    assert cad.deadline_s == cfg.POLL_WALL_CLOCK_LIMIT_S

    video = policy_for("video")
    assert video.backoff_factor == 1.0
    assert video.interval_s == cfg.POLL_VIDEO_INTERVAL_S

    assert policy_for("upscale").interval_s == cfg.POLL_IMAGE_INTERVAL_S
