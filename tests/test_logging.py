"""Tests for the JSON formatter and root logger setup."""
import json
import logging
import sys

import pytest

from media_engine.utils.logging import PLAIN_FORMAT, StructuredFormatter, configure_logging


def _record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("media_engine.test", logging.WARNING, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_minimum_fields():
    entry = json.loads(StructuredFormatter().format(_record()))
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "media_engine.test"
    assert entry["message"] == "hello world"
    assert "timestamp" in entry
    assert "job_id" not in entry


def test_structured_formatter_carries_job_id_and_metrics():
    entry = json.loads(StructuredFormatter().format(_record(job_id="job-7", metrics={"attempts": 3})))
    assert entry["job_id"] == "job-7"
    assert entry["metrics"] == {"attempts": 3}


def test_structured_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    entry = json.loads(StructuredFormatter().format(record))
    assert "RuntimeError: boom" in entry["exception"]


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging_json(restore_root_logger):
    configure_logging("debug", "json")
    assert restore_root_logger.level == logging.DEBUG
    assert len(restore_root_logger.handlers) == 1
    assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)


def test_configure_logging_plain_and_unknown_level(restore_root_logger):
    configure_logging("LOUD", "structured")
    assert restore_root_logger.level == logging.INFO
    assert restore_root_logger.handlers[0].formatter._fmt == PLAIN_FORMAT
