"""Tests for ApiResponse envelope and ResponseMeta."""
from media_engine.api.schemas.envelope import ApiResponse, ResponseMeta


def test_success_response():
    resp = ApiResponse.success({"key": "value"})
    assert resp.ok is True
    assert resp.data == {"key": "value"}
    assert resp.error is None
    assert resp.meta.pending_jobs is None


def test_fail_response():
    resp = ApiResponse.fail("something broke", warnings=["w1"])
    assert resp.ok is False
    assert resp.error == "something broke"
    assert resp.data is None
    assert resp.meta.warnings == ["w1"]


def test_meta_defaults():
    meta = ResponseMeta()
    assert meta.generated_at is not None
    assert meta.warnings == []
    assert meta.total is None
    assert meta.elapsed_ms is None


def test_meta_keywords_pass_through_success():
    resp = ApiResponse.success([1, 2], total=2, pending_jobs=3, elapsed_ms=1.5)
    assert resp.meta.total == 2
    assert resp.meta.pending_jobs == 3
    assert resp.meta.elapsed_ms == 1.5


def test_serialization_roundtrip():
    resp = ApiResponse.success({"list": [1, 2, 3]}, total=3)
    dumped = resp.model_dump()
    assert dumped["ok"] is True
    assert dumped["data"]["list"] == [1, 2, 3]
    assert dumped["meta"]["total"] == 3
