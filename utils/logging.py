"""
Structured logging for the media engine.

Provides:
    - StructuredFormatter: JSON formatter for machine-parseable log output.
    - configure_logging: Root logger setup shared by the API lifespan and
      ``run_server.py``.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

PLAIN_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output.

    Each log record is serialised as a single JSON line containing at minimum:
        timestamp, level, logger, message.
    Records logged with ``extra={"job_id": ...}`` carry the job id, and
    ``extra={"metrics": {...}}`` adds those key-value pairs under ``"metrics"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = getattr(record, "job_id", None)
        if job_id is not None:
            log_entry["job_id"] = job_id
        if hasattr(record, "metrics"):
            log_entry["metrics"] = record.metrics
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "structured") -> None:
    """Install a single root handler.

    Parameters
    ----------
    level : str
        Minimum log level.  One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"json"`` renders each record with :class:`StructuredFormatter`;
        anything else uses the pipe-separated plain format.
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    if fmt == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        logging.basicConfig(level=numeric_level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=numeric_level,
            format=PLAIN_FORMAT,
            datefmt=DATE_FORMAT,
            force=True,
        )
