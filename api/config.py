"""Runtime-adjustable configuration for the API layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Set

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint.
# Poll policies are rebuilt per polled operation, so changes apply to the
# next prediction a job waits on.
_ADJUSTABLE_KEYS: Set[str] = {
    "POLL_IMAGE_INTERVAL_S",
    "POLL_IMAGE_MAX_ATTEMPTS",
    "POLL_VIDEO_INTERVAL_S",
    "POLL_VIDEO_MAX_ATTEMPTS",
    "POLL_MESH_INTERVAL_S",
    "POLL_MESH_MAX_ATTEMPTS",
    "POLL_CAD_INITIAL_INTERVAL_S",
    "POLL_CAD_BACKOFF_FACTOR",
    "POLL_CAD_MAX_INTERVAL_S",
    "POLL_CAD_MAX_ATTEMPTS",
    "POLL_WALL_CLOCK_LIMIT_S",
    "POLL_GRACE_PERIOD_S",
    "POLL_GRACE_ATTEMPTS",
}

# Semantic validators: key -> (validator_fn, human-readable description).
# Validator returns True if the value is acceptable.
CONFIG_VALIDATORS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    "POLL_IMAGE_INTERVAL_S": (lambda v: 0.1 <= v <= 60.0, "Must be between 0.1 and 60 seconds"),
    "POLL_VIDEO_INTERVAL_S": (lambda v: 0.1 <= v <= 60.0, "Must be between 0.1 and 60 seconds"),
    "POLL_MESH_INTERVAL_S": (lambda v: 0.1 <= v <= 60.0, "Must be between 0.1 and 60 seconds"),
    "POLL_CAD_INITIAL_INTERVAL_S": (lambda v: 0.1 <= v <= 60.0, "Must be between 0.1 and 60 seconds"),
    "POLL_CAD_MAX_INTERVAL_S": (lambda v: 0.1 <= v <= 300.0, "Must be between 0.1 and 300 seconds"),
    "POLL_CAD_BACKOFF_FACTOR": (lambda v: 1.0 <= v <= 3.0, "Must be between 1.0 and 3.0"),
    "POLL_IMAGE_MAX_ATTEMPTS": (lambda v: 1 <= v <= 1000, "Must be between 1 and 1000"),
    "POLL_VIDEO_MAX_ATTEMPTS": (lambda v: 1 <= v <= 1000, "Must be between 1 and 1000"),
    "POLL_MESH_MAX_ATTEMPTS": (lambda v: 1 <= v <= 1000, "Must be between 1 and 1000"),
    "POLL_CAD_MAX_ATTEMPTS": (lambda v: 1 <= v <= 1000, "Must be between 1 and 1000"),
    "POLL_WALL_CLOCK_LIMIT_S": (lambda v: 10.0 <= v <= 3600.0, "Must be between 10 and 3600 seconds"),
    "POLL_GRACE_PERIOD_S": (lambda v: 0.0 <= v <= 30.0, "Must be between 0 and 30 seconds"),
    "POLL_GRACE_ATTEMPTS": (lambda v: 0 <= v <= 10, "Must be between 0 and 10"),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    job_db_path: str = "media_jobs.db"
    log_level: str = "INFO"

    # Provider credentials
    replicate_api_token: str = ""
    gateway_api_key: str = ""

    # Completion webhooks: public URL handed to providers, and the shared
    # secret used to verify their signatures.  Empty disables both.
    webhook_url: str = ""
    webhook_secret: str = ""

    storage_dir: Optional[str] = None
    public_base_url: Optional[str] = None
    stitch_service_url: Optional[str] = None

    model_config = {"env_prefix": "MEDIA_ENGINE_API_"}


class RuntimeConfig:
    """Thin wrapper around engine ``config.py`` module-level variables.

    Provides get/patch semantics restricted to the adjustable whitelist.
    """

    def __init__(self) -> None:
        from .. import config as _cfg

        self._cfg = _cfg

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            out[key] = getattr(self._cfg, key, None)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply validated updates and return the new state.

        All values are validated before any is applied.  Raises
        ``KeyError`` for unknown keys and ``ValueError`` for bad values.
        """
        bad = set(updates) - _ADJUSTABLE_KEYS
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        coerced_all: Dict[str, Any] = {}
        for key, value in updates.items():
            target_type = type(getattr(self._cfg, key))
            if isinstance(value, bool):
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}")
            try:
                coerced = target_type(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
            validator = CONFIG_VALIDATORS.get(key)
            if validator is not None:
                check_fn, description = validator
                if not check_fn(coerced):
                    raise ValueError(
                        f"Invalid value for {key}: {coerced!r}. {description}"
                    )
            coerced_all[key] = coerced
        for key, coerced in coerced_all.items():
            setattr(self._cfg, key, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()
