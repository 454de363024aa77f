"""
Central configuration for the media engine.

Flat-constant interface.  All values that overlap with
``config_structured.py`` are derived from the structured config singleton
so there is a single source of truth.  Fallback chains come from
``config_data/backends.yaml``.

Config Status Legend
====================
Each constant is annotated with one of the following statuses:

  ACTIVE      — Imported and used by running code.  Changing the value
                affects live behaviour.
  PLACEHOLDER — Defined for future use.  Safe to change without
                affecting current behaviour.

Constants marked RUNTIME may also be patched through ``PATCH /api/config``;
poll policies read them at the start of every polled operation.

Search for ``# STATUS:`` to locate all annotations.
"""
import os
from pathlib import Path
from typing import Any, Dict, List

from .config_structured import get_config as _get_config

_cfg = _get_config()

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent                  # STATUS: ACTIVE — base path for all relative references
ARTIFACT_DIR = _cfg.storage.root_dir              # STATUS: ACTIVE — api/services/storage_service.py; local blob store root
BACKENDS_FILE = _cfg.backends.chains_file         # STATUS: ACTIVE — fallback chain definitions, loaded below

# ── Logging ────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("MEDIA_ENGINE_LOG_LEVEL", _cfg.logging.level)  # STATUS: ACTIVE — api/main.py lifespan
LOG_FORMAT = os.environ.get("MEDIA_ENGINE_LOG_FORMAT", _cfg.logging.format.value)  # STATUS: ACTIVE — "structured" or "json"

# ── Polling (RUNTIME) ──────────────────────────────────────────────────
POLL_IMAGE_INTERVAL_S = _cfg.polling.image_interval_s          # STATUS: ACTIVE — api/jobs/poller.py; image + upscale predictions
POLL_IMAGE_MAX_ATTEMPTS = _cfg.polling.image_max_attempts      # STATUS: ACTIVE — api/jobs/poller.py
POLL_VIDEO_INTERVAL_S = _cfg.polling.video_interval_s          # STATUS: ACTIVE — api/jobs/poller.py; fixed interval
POLL_VIDEO_MAX_ATTEMPTS = _cfg.polling.video_max_attempts      # STATUS: ACTIVE — api/jobs/poller.py
POLL_MESH_INTERVAL_S = _cfg.polling.mesh_interval_s            # STATUS: ACTIVE — api/jobs/poller.py; 3D mesh conversion
POLL_MESH_MAX_ATTEMPTS = _cfg.polling.mesh_max_attempts        # STATUS: ACTIVE — api/jobs/poller.py
POLL_CAD_INITIAL_INTERVAL_S = _cfg.polling.cad_initial_interval_s  # STATUS: ACTIVE — api/jobs/poller.py; CAD backoff start
POLL_CAD_BACKOFF_FACTOR = _cfg.polling.cad_backoff_factor      # STATUS: ACTIVE — api/jobs/poller.py; multiplier per attempt
POLL_CAD_MAX_INTERVAL_S = _cfg.polling.cad_max_interval_s      # STATUS: ACTIVE — api/jobs/poller.py; CAD backoff ceiling
POLL_CAD_MAX_ATTEMPTS = _cfg.polling.cad_max_attempts          # STATUS: ACTIVE — api/jobs/poller.py
POLL_WALL_CLOCK_LIMIT_S = _cfg.polling.wall_clock_limit_s      # STATUS: ACTIVE — api/jobs/poller.py; hard ceiling for every polled operation
POLL_GRACE_PERIOD_S = _cfg.polling.grace_period_s              # STATUS: ACTIVE — api/jobs/poller.py; wait between registry re-checks
POLL_GRACE_ATTEMPTS = _cfg.polling.grace_attempts              # STATUS: ACTIVE — api/jobs/poller.py; re-checks after an empty success

# ── Pipelines ──────────────────────────────────────────────────────────
DEFAULT_IMAGE_WIDTH = _cfg.pipeline.default_width              # STATUS: ACTIVE — api/jobs/dispatcher.py; non-default sizes trigger enhancement
DEFAULT_IMAGE_HEIGHT = _cfg.pipeline.default_height            # STATUS: ACTIVE — api/jobs/dispatcher.py
UPSCALE_FACTORS = tuple(_cfg.pipeline.upscale_factors)         # STATUS: ACTIVE — api/jobs/dispatcher.py; allowed enhancement scales
DEFAULT_SCENE_DURATION = _cfg.pipeline.default_scene_duration  # STATUS: ACTIVE — api/jobs/scenes.py, api/jobs/scene_splitter.py
DEFAULT_MESH_SEED = _cfg.pipeline.default_mesh_seed            # STATUS: ACTIVE — backends/inputs.py; mesh conversion seed
THREE_D_REFERENCE_SUFFIX = _cfg.pipeline.three_d_reference_suffix  # STATUS: ACTIVE — api/jobs/dispatcher.py
CAD_PROMPT_SUFFIX = _cfg.pipeline.cad_prompt_suffix            # STATUS: ACTIVE — api/jobs/dispatcher.py
CAD_REFERENCE_SUFFIX = _cfg.pipeline.cad_reference_suffix      # STATUS: ACTIVE — api/jobs/dispatcher.py
MAX_CONCURRENT_JOBS = _cfg.pipeline.max_concurrent_jobs        # STATUS: ACTIVE — api/jobs/registry.py; semaphore size
MAX_QUEUED_JOBS = _cfg.pipeline.max_queued_jobs                # STATUS: ACTIVE — api/jobs/registry.py; JobQueueFullError beyond this
SUBMIT_RETRY_BACKOFF_S = _cfg.pipeline.submit_retry_backoff_s  # STATUS: ACTIVE — backends/replicate.py; gateway-timeout retry delay

# ── Storage ────────────────────────────────────────────────────────────
STORAGE_BUCKET = _cfg.storage.bucket                           # STATUS: ACTIVE — api/services/storage_service.py
STORAGE_PUBLIC_BASE_URL = _cfg.storage.public_base_url         # STATUS: ACTIVE — api/services/storage_service.py; overridable via settings
SIGNED_URL_TTL_S = _cfg.storage.signed_url_ttl_s               # STATUS: ACTIVE — api/services/storage_service.py; 7 days
DOWNLOAD_TIMEOUT_S = _cfg.storage.download_timeout_s           # STATUS: ACTIVE — api/services/storage_service.py

# ── Stitching ──────────────────────────────────────────────────────────
STITCH_SERVICE_URL = _cfg.stitching.service_url                # STATUS: ACTIVE — api/services/stitching_service.py; overridable via settings
STITCH_TIMEOUT_S = _cfg.stitching.timeout_s                    # STATUS: ACTIVE — api/services/stitching_service.py
STITCH_DEFAULT_TRANSITION = _cfg.stitching.default_transition  # STATUS: ACTIVE — api/jobs/scenes.py

# ── Backends ───────────────────────────────────────────────────────────
PREDICTION_API_BASE = _cfg.backends.prediction_api_base        # STATUS: ACTIVE — backends/replicate.py
IMAGE_GATEWAY_URL = _cfg.backends.gateway_url                  # STATUS: ACTIVE — backends/gateway.py
BACKEND_REQUEST_TIMEOUT_S = _cfg.backends.request_timeout_s    # STATUS: ACTIVE — backends/*.py

# Maps media kind -> ordered backend definitions.
# Loaded from config_data/backends.yaml below.
FALLBACK_CHAINS: Dict[str, List[Dict[str, Any]]] = {}  # STATUS: ACTIVE — backends/registry.py

import yaml as _yaml

if BACKENDS_FILE.exists():
    try:
        with open(BACKENDS_FILE) as _f:
            _chains = _yaml.safe_load(_f)
        if isinstance(_chains, dict) and isinstance(_chains.get("chains"), dict):
            for _media, _entries in _chains["chains"].items():
                if isinstance(_entries, list):
                    FALLBACK_CHAINS[str(_media)] = [dict(e) for e in _entries if isinstance(e, dict)]
    except Exception:
        pass  # Will be caught by validate_config()

del _yaml

REQUIRED_CHAINS = ("image", "upscale", "video", "mesh", "cad_mesh")  # STATUS: ACTIVE — validate_config()


def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup and available via /api/config/validate.
    """
    issues = []

    # 1. Chains missing entirely → nothing can be dispatched
    for media in REQUIRED_CHAINS:
        if not FALLBACK_CHAINS.get(media):
            issues.append({
                "level": "ERROR",
                "message": (
                    f"No '{media}' fallback chain configured. "
                    f"Check {BACKENDS_FILE} has a 'chains.{media}' list."
                ),
            })

    # 2. Provider credentials
    uses_predictions = any(
        e.get("kind") == "prediction" for chain in FALLBACK_CHAINS.values() for e in chain
    )
    if uses_predictions and not os.environ.get("MEDIA_ENGINE_API_REPLICATE_API_TOKEN"):
        issues.append({
            "level": "WARNING",
            "message": (
                "Prediction backends are configured but MEDIA_ENGINE_API_REPLICATE_API_TOKEN "
                "is not set. Every prediction submit will fail and fall through the chain."
            ),
        })
    uses_gateway = any(
        e.get("kind") == "chat_gateway" for chain in FALLBACK_CHAINS.values() for e in chain
    )
    if uses_gateway and not os.environ.get("MEDIA_ENGINE_API_GATEWAY_API_KEY"):
        issues.append({
            "level": "WARNING",
            "message": (
                "Image gateway backends are configured but MEDIA_ENGINE_API_GATEWAY_API_KEY "
                "is not set. Image jobs will skip straight to prediction backends."
            ),
        })

    # 3. Polling ceiling shorter than a single CAD backoff step
    if POLL_WALL_CLOCK_LIMIT_S < POLL_CAD_MAX_INTERVAL_S:
        issues.append({
            "level": "WARNING",
            "message": (
                f"POLL_WALL_CLOCK_LIMIT_S ({POLL_WALL_CLOCK_LIMIT_S}s) is shorter than "
                f"POLL_CAD_MAX_INTERVAL_S ({POLL_CAD_MAX_INTERVAL_S}s); CAD jobs will time out early."
            ),
        })

    # 4. Stitching service
    if not (STITCH_SERVICE_URL or os.environ.get("MEDIA_ENGINE_API_STITCH_SERVICE_URL")):
        issues.append({
            "level": "WARNING",
            "message": (
                "No stitching service URL configured. Multi-scene video jobs will fail "
                "at the stitching step; single-scene jobs are unaffected."
            ),
        })

    return issues
