"""API server entry point.

Usage:
    # Development:
    python run_server.py --reload

    # Custom host/port, storage served from a CDN:
    python run_server.py --host 0.0.0.0 --port 9000 --public-base-url https://cdn.example.com
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure media_engine is importable regardless of CWD
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Media Engine API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--db", default=None, help="Job database path (default: media_jobs.db)")
    parser.add_argument("--storage-dir", default=None, help="Root directory for archived artifacts")
    parser.add_argument("--public-base-url", default=None, help="Public URL prefix for archived artifacts")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    import uvicorn

    from media_engine.api.config import ApiSettings
    from media_engine.api.main import create_app
    from media_engine.utils.logging import configure_logging

    # Settings are read from MEDIA_ENGINE_API_* variables; exporting the
    # overrides lets the reloader's worker process see them too.
    overrides = {
        "HOST": args.host,
        "PORT": str(args.port),
        "LOG_LEVEL": args.log_level.upper(),
        "JOB_DB_PATH": args.db,
        "STORAGE_DIR": args.storage_dir,
        "PUBLIC_BASE_URL": args.public_base_url,
    }
    for key, value in overrides.items():
        if value:
            os.environ[f"MEDIA_ENGINE_API_{key}"] = value

    configure_logging(args.log_level.upper())
    logger.info("Serving media_engine API on %s:%s", args.host, args.port)
    if args.reload:
        uvicorn.run("media_engine.api.main:create_app", factory=True,
                    host=args.host, port=args.port, reload=True, log_level=args.log_level)
    else:
        uvicorn.run(create_app(ApiSettings()), host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
