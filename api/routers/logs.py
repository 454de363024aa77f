"""Log retrieval endpoint."""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Optional

from fastapi import APIRouter

from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/logs", tags=["logs"])

# In-memory ring buffer for recent log records.
_LOG_BUFFER: deque = deque(maxlen=500)

_PACKAGE_LOGGER = "media_engine"


class _BufferHandler(logging.Handler):
    """Captures log records into the ring buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        _LOG_BUFFER.append({
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", None),
        })


_handler = _BufferHandler()
_handler.setLevel(logging.INFO)


def setup_log_buffer() -> None:
    """Attach the buffer handler to the ``media_engine`` logger.

    Safe to call multiple times.  Call this from the app lifespan.
    """
    pkg_logger = logging.getLogger(_PACKAGE_LOGGER)
    if not any(isinstance(h, _BufferHandler) for h in pkg_logger.handlers):
        pkg_logger.addHandler(_handler)


def teardown_log_buffer() -> None:
    """Detach the buffer handler.  Useful for test cleanup."""
    logging.getLogger(_PACKAGE_LOGGER).removeHandler(_handler)
    _LOG_BUFFER.clear()


@router.get("")
async def get_logs(last_n: int = 100, level: Optional[str] = None, job_id: Optional[str] = None) -> ApiResponse:
    """Most recent buffered records, optionally filtered by minimum level or job."""
    t0 = time.monotonic()
    entries = list(_LOG_BUFFER)
    if level:
        floor = logging.getLevelName(level.upper())
        if isinstance(floor, int):
            entries = [e for e in entries if logging.getLevelName(e["level"]) >= floor]
    if job_id:
        entries = [e for e in entries if e.get("job_id") == job_id or job_id in e["message"]]
    entries = entries[-last_n:]
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(entries, total=len(entries), elapsed_ms=elapsed)
