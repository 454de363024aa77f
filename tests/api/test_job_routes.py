"""HTTP-level tests for job, webhook, config, health and log endpoints."""
import asyncio
import json
import logging

import pytest

import media_engine.api.deps.providers as _prov
from media_engine.api.config import ApiSettings
from media_engine.api.deps.auth import WEBHOOK_SIGNATURE_HEADER, sign_payload


async def _wait_for(client, job_id, predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = (await client.get(f"/api/jobs/{job_id}")).json()["data"]
        if predicate(job):
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job['status']}")
        await asyncio.sleep(0.01)


async def _wait_status(client, job_id):
    """Wait until the job is terminal and its pipeline task has exited."""
    return await _wait_for(
        client, job_id,
        lambda job: job["status"] in ("completed", "failed") and not _prov._job_registry.is_active(job_id),
    )


async def _submit(client, headers=None, **options):
    resp = await client.post("/api/jobs", json=options, headers=headers or {})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["job_id"]


# ── Health ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "ok"
    assert data["pending_jobs"] == 0
    assert data["available_backends"]["video"] == 1


@pytest.mark.asyncio
async def test_health_degraded_without_credentials(client, api_backends):
    api_backends["mesh"][0]._available = False
    data = (await client.get("/api/health")).json()["data"]
    assert data["status"] == "degraded"
    assert data["available_backends"]["mesh"] == 0


# ── Jobs ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submit_image_job_end_to_end(client):
    resp = await client.post("/api/jobs", json={"type": "image", "prompt": "a red bicycle"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["data"]["status"] == "queued"
    assert body["data"]["job_type"] == "image"
    assert body["meta"]["pending_jobs"] >= 0

    job = await _wait_status(client, body["data"]["job_id"])
    assert job["status"] == "completed"
    assert job["outputs"][0].startswith("https://store.test/anonymous/")
    assert job["progress"]["percent"] == 100.0
    assert "options" not in job
    assert "active_prediction" not in job


@pytest.mark.asyncio
async def test_caller_identity_namespaces_artifacts(client):
    job_id = await _submit(client, headers={"X-User-Id": "user-42"}, type="image", prompt="a kite")
    job = await _wait_status(client, job_id)
    assert job["outputs"][0].startswith("https://store.test/user-42/")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload, fragment", [
    ({"type": "image"}, "prompt"),
    ({"type": "hologram", "prompt": "x"}, "type"),
    ({"type": "image", "prompt": "x", "num_images": 9}, "num_images"),
    ({"type": "image", "prompt": "x", "upscale_factor": 3}, "upscale_factor"),
])
async def test_submit_validation_errors(client, payload, fragment):
    resp = await client.post("/api/jobs", json=payload)
    assert resp.status_code == 422
    body = resp.json()
    assert body["ok"] is False
    assert fragment in body["error"]


@pytest.mark.asyncio
async def test_get_unknown_job(client):
    resp = await client.get("/api/jobs/nope")
    assert resp.status_code == 404
    assert resp.json()["ok"] is False


@pytest.mark.asyncio
async def test_list_jobs_with_status_filter(client):
    job_id = await _submit(client, type="image", prompt="first")
    await _wait_status(client, job_id)
    await _submit(client, type="image", prompt="second")

    body = (await client.get("/api/jobs")).json()
    assert body["meta"]["total"] == 2
    completed = (await client.get("/api/jobs", params={"status": "completed"})).json()["data"]
    assert job_id in [j["job_id"] for j in completed]


@pytest.mark.asyncio
async def test_cancel_running_video(client, api_backends):
    api_backends["video"][0].states = ["processing"]
    job_id = await _submit(client, type="video", prompt="a glacier calving", video_mode="short")
    await _wait_for(client, job_id, lambda job: job["status"] == "running")

    resp = await client.post(f"/api/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"cancelled": True}

    job = await _wait_status(client, job_id)
    assert job["status"] == "failed"
    assert job["error"] == "Cancelled by user"
    assert job["cancel_requested"] is True


@pytest.mark.asyncio
async def test_cancel_finished_and_unknown_jobs(client):
    job_id = await _submit(client, type="image", prompt="done already")
    await _wait_status(client, job_id)
    resp = await client.post(f"/api/jobs/{job_id}/cancel")
    assert resp.json()["data"] == {"cancelled": False}
    assert (await client.post("/api/jobs/nope/cancel")).status_code == 404


# ── Scene regeneration ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_regenerate_scene_route(client):
    job_id = await _submit(client, type="video", scene_prompts=["sunrise", "sunset"])
    first = await _wait_status(client, job_id)
    assert first["status"] == "completed"
    assert first["total_scenes"] == 2

    resp = await client.post(f"/api/jobs/{job_id}/scenes/0/regenerate", json={"prompt": "misty sunrise"})
    assert resp.status_code == 200
    assert resp.json()["data"]["regenerating_scene_index"] == 0

    job = await _wait_status(client, job_id)
    assert job["status"] == "completed"
    assert job["scenes"][0]["prompt"] == "misty sunrise"
    assert job["manifest"]["previous_outputs"] == first["outputs"]


@pytest.mark.asyncio
async def test_regenerate_scene_errors(client):
    assert (await client.post("/api/jobs/nope/scenes/0/regenerate")).status_code == 404

    image_id = await _submit(client, type="image", prompt="still")
    await _wait_status(client, image_id)
    resp = await client.post(f"/api/jobs/{image_id}/scenes/0/regenerate")
    assert resp.status_code == 422
    assert "no scenes" in resp.json()["error"]


@pytest.mark.asyncio
async def test_regenerate_running_job_conflicts(client, api_backends):
    api_backends["video"][0].states = ["processing"]
    job_id = await _submit(client, type="video", scene_prompts=["a", "b"])
    await _wait_for(client, job_id, lambda job: job["total_scenes"] > 0)
    resp = await client.post(f"/api/jobs/{job_id}/scenes/0/regenerate")
    assert resp.status_code == 409


# ── Webhooks ─────────────────────────────────────────────────────────


@pytest.fixture
def webhook_secret(app):
    app.dependency_overrides[_prov.get_settings] = lambda: ApiSettings(webhook_secret="whsec_test")
    yield "whsec_test"
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_webhook_signature_required(client, webhook_secret):
    body = json.dumps({"id": "unknown", "status": "succeeded"}).encode()
    resp = await client.post("/api/webhooks/predictions", content=body)
    assert resp.status_code == 401

    resp = await client.post(
        "/api/webhooks/predictions", content=body,
        headers={WEBHOOK_SIGNATURE_HEADER: "sha256=deadbeef"},
    )
    assert resp.status_code == 401

    resp = await client.post(
        "/api/webhooks/predictions", content=body,
        headers={WEBHOOK_SIGNATURE_HEADER: sign_payload(body, webhook_secret)},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {"handled": False}


@pytest.mark.asyncio
async def test_webhook_rejects_malformed_body(client):
    resp = await client.post("/api/webhooks/predictions", content=b"{not json")
    assert resp.status_code == 422
    resp = await client.post("/api/webhooks/predictions", content=b"[1, 2]")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_webhook_finalises_mesh_job(client, api_backends):
    api_backends["mesh"][0].states = ["processing"]
    job_id = await _submit(client, type="3d", image_url="https://user/chair.jpg")

    async def _prediction():
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5.0
        while loop.time() < deadline:
            rec = await _prov._job_registry.get(job_id)
            if rec.active_prediction is not None and rec.active_prediction.stage == "mesh":
                return rec.active_prediction
            await asyncio.sleep(0.01)
        raise AssertionError("mesh prediction never started")

    ref = await _prediction()
    resp = await client.post("/api/webhooks/predictions", json={
        "id": ref.prediction_id, "status": "succeeded", "output": ["https://cdn.example/chair.glb"],
    })
    assert resp.status_code == 200
    assert resp.json()["data"] == {"handled": True, "job_id": job_id, "status": "completed"}

    job = await _wait_status(client, job_id)
    assert job["status"] == "completed"
    assert job["manifest"]["model_format"] == "glb"


# ── Config ───────────────────────────────────────────────────────────


@pytest.fixture
def restore_poll_config(monkeypatch):
    import media_engine.config as cfg

    for key in _prov.get_runtime_config().get_adjustable():
        monkeypatch.setattr(cfg, key, getattr(cfg, key))


@pytest.mark.asyncio
async def test_config_get_and_patch(client, restore_poll_config):
    data = (await client.get("/api/config")).json()["data"]
    assert "POLL_VIDEO_INTERVAL_S" in data

    resp = await client.patch("/api/config", json={"POLL_VIDEO_MAX_ATTEMPTS": 90})
    assert resp.status_code == 200
    assert resp.json()["data"]["POLL_VIDEO_MAX_ATTEMPTS"] == 90

    resp = await client.patch("/api/config", json={"POLL_VIDEO_INTERVAL_S": 0})
    assert resp.status_code == 422
    assert resp.json()["ok"] is False

    resp = await client.patch("/api/config", json={"DEFAULT_IMAGE_WIDTH": 2048})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_config_backends_and_validate(client, api_backends):
    api_backends["image"][0]._available = False
    chains = (await client.get("/api/config/backends")).json()["data"]
    assert chains["image"][0] == {
        "value": "fake-image", "status": "inactive", "reason": "credentials not configured",
    }
    assert chains["video"][0]["status"] == "active"

    report = (await client.get("/api/config/validate")).json()["data"]
    assert report["count"] == report["errors"] + report["warnings"]


# ── Logs ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_logs_filter_by_job(client, caplog):
    from media_engine.api.routers.logs import setup_log_buffer, teardown_log_buffer

    caplog.set_level(logging.INFO, logger="media_engine")
    setup_log_buffer()
    try:
        job_id = await _submit(client, type="image", prompt="logged")
        await _wait_status(client, job_id)
        entries = (await client.get("/api/logs", params={"job_id": job_id})).json()["data"]
        assert entries
        assert any(job_id in e["message"] for e in entries)

        errors_only = (await client.get("/api/logs", params={"level": "ERROR"})).json()["data"]
        assert all(e["level"] in ("ERROR", "CRITICAL") for e in errors_only)
    finally:
        teardown_log_buffer()
