"""
Structured configuration for the media engine using typed dataclasses.

This is the AUTHORITATIVE source of truth for all configuration values.
``config.py`` imports from here for backward compatibility.

Each subsystem gets its own dataclass.

Usage:
    from config_structured import get_config
    cfg = get_config()
    cfg.polling.video_interval_s     # fixed interval for video predictions
    cfg.pipeline.default_width       # size below which no enhancement runs
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class LogFormat(Enum):
    """Console log rendering."""
    STRUCTURED = "structured"
    JSON = "json"


# ── Polling ───────────────────────────────────────────────────────────


@dataclass
class PollingConfig:
    """Prediction polling cadence per media type.

    Video, 3D and image predictions poll at a fixed interval.  CAD
    predictions start fast and back off geometrically up to a ceiling.
    Every polled operation also honours ``wall_clock_limit_s``.
    """
    image_interval_s: float = 2.0
    image_max_attempts: int = 60
    video_interval_s: float = 5.0
    video_max_attempts: int = 120
    mesh_interval_s: float = 5.0
    mesh_max_attempts: int = 120
    cad_initial_interval_s: float = 2.0
    cad_backoff_factor: float = 1.25
    cad_max_interval_s: float = 10.0
    cad_max_attempts: int = 120
    wall_clock_limit_s: float = 600.0
    grace_period_s: float = 2.0
    grace_attempts: int = 3

    def __post_init__(self):
        for name in (
            "image_interval_s", "video_interval_s", "mesh_interval_s",
            "cad_initial_interval_s", "cad_max_interval_s", "wall_clock_limit_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.cad_backoff_factor < 1.0:
            raise ValueError(
                f"cad_backoff_factor must be >= 1.0, got {self.cad_backoff_factor}"
            )
        if self.cad_max_interval_s < self.cad_initial_interval_s:
            raise ValueError("cad_max_interval_s must not be below cad_initial_interval_s")
        if self.grace_attempts < 0:
            raise ValueError(f"grace_attempts must be >= 0, got {self.grace_attempts}")


# ── Pipelines ─────────────────────────────────────────────────────────


@dataclass
class PipelineConfig:
    """Per-media pipeline defaults."""
    default_width: int = 1024
    default_height: int = 1024
    upscale_factors: tuple = (2, 4, 8)
    default_scene_duration: int = 8
    default_mesh_seed: int = 1234
    three_d_reference_suffix: str = (
        ". Clean white background, professional product shot, centered object, high detail."
    )
    cad_prompt_suffix: str = (
        ". Engineering CAD model with precise geometry, clean edges, "
        "manufacturable dimensions, mechanical part design"
    )
    cad_reference_suffix: str = (
        ". Clean white background, isometric view, technical drawing style, "
        "high precision, centered, professional product photography, "
        "engineering blueprint aesthetic"
    )
    max_concurrent_jobs: int = 4
    max_queued_jobs: int = 50
    submit_retries: int = 3
    submit_retry_backoff_s: float = 2.0

    def __post_init__(self):
        if self.default_width < 64 or self.default_height < 64:
            raise ValueError("default image dimensions must be at least 64px")
        if not self.upscale_factors or sorted(self.upscale_factors) != list(self.upscale_factors):
            raise ValueError("upscale_factors must be a non-empty ascending tuple")
        if self.max_concurrent_jobs < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {self.max_concurrent_jobs}")
        if self.max_queued_jobs < self.max_concurrent_jobs:
            raise ValueError("max_queued_jobs must be >= max_concurrent_jobs")


# ── Artifact storage ──────────────────────────────────────────────────


@dataclass
class StorageConfig:
    """Where persisted artifacts land and how long their links live."""
    root_dir: Path = field(default_factory=lambda: Path(__file__).parent / "artifacts")
    public_base_url: Optional[str] = None
    bucket: str = "generated-media"
    signed_url_ttl_s: int = 604800  # 7 days
    download_timeout_s: float = 120.0


# ── Stitching ─────────────────────────────────────────────────────────


@dataclass
class StitchingConfig:
    """Remote video stitching service."""
    service_url: Optional[str] = None
    timeout_s: float = 300.0
    default_transition: str = "cut"


# ── Backends ──────────────────────────────────────────────────────────


@dataclass
class BackendsConfig:
    """Generation backend endpoints and fallback chain source."""
    chains_file: Path = field(
        default_factory=lambda: Path(__file__).parent / "config_data" / "backends.yaml"
    )
    prediction_api_base: str = "https://api.replicate.com/v1"
    gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    request_timeout_s: float = 60.0


# ── Logging ───────────────────────────────────────────────────────────


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = LogFormat.STRUCTURED

    def __post_init__(self):
        if isinstance(self.format, str):
            self.format = LogFormat(self.format)
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {self.level!r}")


# ── Top-level ─────────────────────────────────────────────────────────


@dataclass
class SystemConfig:
    """Aggregate of every subsystem config."""
    polling: PollingConfig = field(default_factory=PollingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    stitching: StitchingConfig = field(default_factory=StitchingConfig)
    backends: BackendsConfig = field(default_factory=BackendsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Return the singleton SystemConfig instance.

    On first call, instantiates the default SystemConfig. Subsequent
    calls return the same instance so all callers share one source of
    truth.
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SystemConfig()
    return _CONFIG
