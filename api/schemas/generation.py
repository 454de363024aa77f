"""Request/response schemas for generation jobs."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..jobs.models import JobProgress, JobRecord, JobStatus, JobType, SceneState


class JobCreated(BaseModel):
    job_id: str
    job_type: JobType
    status: JobStatus = JobStatus.queued


class SceneRegenerateRequest(BaseModel):
    """Optional replacement prompt for the scene being regenerated."""

    prompt: Optional[str] = Field(default=None, max_length=4000)


class JobView(BaseModel):
    """Public projection of a job record."""

    job_id: str
    job_type: JobType
    status: JobStatus
    progress: JobProgress
    outputs: List[str]
    scenes: List[SceneState]
    scene_outputs: List[str]
    current_scene_index: int
    total_scenes: int
    regenerating_scene_index: Optional[int] = None
    manifest: Dict[str, Any]
    cancel_requested: bool
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: str

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobView":
        data = rec.model_dump(exclude={"options", "owner_id", "active_prediction"})
        return cls(total_scenes=rec.total_scenes, **data)
