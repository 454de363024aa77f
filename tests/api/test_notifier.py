"""Tests for job update fan-out."""
import asyncio

import pytest

from media_engine.api.jobs.models import GenerationOptions, JobRecord, JobStatus
from media_engine.api.jobs.notifier import UpdateNotifier


def _record(status=JobStatus.running, outputs=None):
    opts = GenerationOptions(type="image", prompt="lighthouse at dusk")
    return JobRecord(job_id="job-1", job_type=opts.type, options=opts, status=status, outputs=outputs or [])


@pytest.mark.asyncio
async def test_sync_and_async_callbacks_receive_updates():
    notifier = UpdateNotifier()
    seen = []

    def sync_cb(rec):
        seen.append(("sync", rec.status))

    async def async_cb(rec):
        seen.append(("async", rec.status))

    notifier.subscribe("job-1", sync_cb)
    notifier.subscribe("job-1", async_cb)
    await notifier.publish(_record())
    assert seen == [("sync", JobStatus.running), ("async", JobStatus.running)]


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others():
    notifier = UpdateNotifier()
    seen = []

    def broken(rec):
        raise RuntimeError("subscriber bug")

    notifier.subscribe("job-1", broken)
    notifier.subscribe("job-1", lambda rec: seen.append(rec.job_id))
    await notifier.publish(_record())
    assert seen == ["job-1"]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent():
    notifier = UpdateNotifier()
    seen = []
    unsubscribe = notifier.subscribe("job-1", lambda rec: seen.append(1))
    assert notifier.subscriber_count("job-1") == 1
    unsubscribe()
    unsubscribe()
    assert notifier.subscriber_count("job-1") == 0
    await notifier.publish(_record())
    assert seen == []


@pytest.mark.asyncio
async def test_other_jobs_not_notified():
    notifier = UpdateNotifier()
    seen = []
    notifier.subscribe("job-2", lambda rec: seen.append(rec.job_id))
    await notifier.publish(_record())
    assert seen == []


@pytest.mark.asyncio
async def test_stream_yields_initial_then_stops_on_final_event():
    notifier = UpdateNotifier()
    events = []

    async def _consume():
        async for event in notifier.stream("job-1", initial=_record(JobStatus.queued)):
            events.append(event["event"])

    task = asyncio.create_task(_consume())
    await asyncio.sleep(0.01)
    await notifier.publish(_record(), "progress")
    await notifier.publish(_record(JobStatus.completed, ["https://x/1.png"]), "completed")
    await asyncio.wait_for(task, timeout=1.0)

    assert events == ["status", "progress", "completed"]
    assert notifier.subscriber_count("job-1") == 0


@pytest.mark.asyncio
async def test_stream_of_terminal_job_ends_immediately():
    notifier = UpdateNotifier()
    rec = _record(JobStatus.completed, ["https://x/1.png"])
    events = [e async for e in notifier.stream("job-1", initial=rec)]
    assert [e["event"] for e in events] == ["status"]
    assert events[0]["data"]["outputs"] == ["https://x/1.png"]
