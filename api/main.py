"""FastAPI application factory and server entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .config import ApiSettings
from .deps.providers import (
    get_artifact_store,
    get_job_registry,
    get_job_store,
    get_settings,
    get_stitcher,
)
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


def _run_config_validation() -> None:
    from .. import config as cfg

    issues = cfg.validate_config()
    for issue in issues:
        level = issue.get("level", "WARNING")
        msg = issue.get("message", "")
        if level == "ERROR":
            logger.error("Config validation: %s", msg)
        else:
            logger.warning("Config validation: %s", msg)
    if not issues:
        logger.info("Config validation: all checks passed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    from .. import config as cfg
    from ..utils.logging import configure_logging

    settings: ApiSettings = get_settings()
    configure_logging(settings.log_level or cfg.LOG_LEVEL, cfg.LOG_FORMAT)
    logger.info("Starting media_engine API on %s:%s", settings.host, settings.port)

    _run_config_validation()

    # Attach log buffer handler
    from .routers.logs import setup_log_buffer, teardown_log_buffer
    setup_log_buffer()

    # Initialise async resources, then resume anything a previous
    # process left unfinished.
    store = get_job_store()
    await store.initialize()
    registry = get_job_registry()
    resumed = await registry.recover()
    if resumed:
        logger.info("Resumed %d unfinished job(s)", resumed)

    yield

    # Cleanup: running pipelines are stopped, not failed, so the next
    # start resumes them.
    await registry.shutdown()
    for resource in (get_artifact_store(), get_stitcher()):
        aclose = getattr(resource, "aclose", None)
        if aclose is not None:
            await aclose()
    await store.close()
    teardown_log_buffer()
    logger.info("Shutting down media_engine API")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Media Engine API",
        description="Asynchronous image, video, 3D and CAD generation jobs with fallback backends.",
        version=__version__,
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS
    origins = [o.strip() for o in settings.cors_origins.split(",")]
    allow_creds = "*" not in origins
    if not allow_creds:
        logger.warning(
            "CORS_ORIGINS contains '*'. Credentials will NOT be allowed. "
            "Set explicit origins (e.g. 'http://localhost:5173') for "
            "credentialed cross-origin requests."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_creds,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handlers
    register_error_handlers(app)

    # Routers: imported lazily so one broken route module doesn't block startup
    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m media_engine.api.main``."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
