"""Job data models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobType(str, enum.Enum):
    image = "image"
    video = "video"
    three_d = "3d"
    cad = "cad"


class JobStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    upscaling = "upscaling"
    encoding = "encoding"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})

# Forward edges only; reopening a terminal job goes through ``reopen=True``.
ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.queued: frozenset({JobStatus.queued, JobStatus.running, JobStatus.failed}),
    JobStatus.running: frozenset({
        JobStatus.running, JobStatus.upscaling, JobStatus.encoding,
        JobStatus.completed, JobStatus.failed,
    }),
    JobStatus.upscaling: frozenset({
        JobStatus.upscaling, JobStatus.running, JobStatus.encoding,
        JobStatus.completed, JobStatus.failed,
    }),
    JobStatus.encoding: frozenset({
        JobStatus.encoding, JobStatus.running, JobStatus.completed, JobStatus.failed,
    }),
    JobStatus.completed: frozenset({JobStatus.completed}),
    JobStatus.failed: frozenset({JobStatus.failed}),
}


class VideoMode(str, enum.Enum):
    short = "short"  # one prediction, no scenes
    long = "long"    # multi-scene with stitching


class SceneStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"


class GenerationOptions(BaseModel):
    """What the user asked for.  Immutable once the job is created."""

    model_config = ConfigDict(frozen=True)

    type: JobType
    prompt: str = ""
    negative_prompt: Optional[str] = None
    width: Optional[int] = Field(default=None, ge=64, le=4096)
    height: Optional[int] = Field(default=None, ge=64, le=4096)
    num_images: int = Field(default=1, ge=1, le=4)
    upscale_factor: Optional[int] = None
    duration: Optional[int] = Field(default=None, ge=1, le=30)
    fps: Optional[int] = Field(default=None, ge=1, le=60)
    video_mode: VideoMode = VideoMode.long
    scene_prompts: Optional[List[str]] = None
    aspect_ratio: Optional[str] = None
    seed: Optional[int] = None
    steps: Optional[int] = Field(default=None, ge=1, le=150)
    cfg_scale: Optional[float] = Field(default=None, ge=0.0, le=30.0)
    image_url: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)
    owner_id: Optional[str] = None

    @field_validator("scene_prompts")
    @classmethod
    def _no_blank_scenes(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        cleaned = [p.strip() for p in v]
        if not cleaned or any(not p for p in cleaned):
            raise ValueError("scene_prompts must be non-empty strings")
        return cleaned

    @field_validator("upscale_factor")
    @classmethod
    def _known_factor(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v not in (2, 4, 8):
            raise ValueError("upscale_factor must be one of 2, 4, 8")
        return v

    @model_validator(mode="after")
    def _prompt_or_image(self) -> "GenerationOptions":
        has_prompt = bool(self.prompt.strip()) or bool(self.scene_prompts)
        mesh_from_image = self.type in (JobType.three_d, JobType.cad) and bool(self.image_url)
        if not has_prompt and not mesh_from_image:
            raise ValueError("a prompt is required")
        return self


class JobProgress(BaseModel):
    """Advisory progress; never used for control flow."""

    stage: JobStatus = JobStatus.queued
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message: str = ""
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    eta_seconds: Optional[float] = None


class SceneState(BaseModel):
    order: int
    prompt: str
    status: SceneStatus = SceneStatus.pending
    progress: float = 0.0
    video_url: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class PredictionRef(BaseModel):
    """The one external prediction a job is currently waiting on."""

    prediction_id: str
    backend: str
    media: str
    stage: str
    index: Optional[int] = None  # scene or output slot the prediction belongs to
    created_at: str = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Persistent representation of a generation job."""

    job_id: str
    job_type: JobType
    options: GenerationOptions
    owner_id: Optional[str] = None
    status: JobStatus = JobStatus.queued
    progress: JobProgress = Field(default_factory=JobProgress)
    outputs: List[str] = Field(default_factory=list)
    scenes: List[SceneState] = Field(default_factory=list)
    scene_outputs: List[str] = Field(default_factory=list)
    current_scene_index: int = 0
    regenerating_scene_index: Optional[int] = None
    active_prediction: Optional[PredictionRef] = None
    manifest: Dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False
    error: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: str = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_scenes(self) -> int:
        return len(self.scenes)


class UserFileRecord(BaseModel):
    """Retention record for an artifact handed to a user."""

    file_id: Optional[int] = None
    owner_id: Optional[str] = None
    job_id: str
    file_url: str
    file_type: str
    file_size_bytes: Optional[int] = None
    expires_at: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
