"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .generation import JobCreated, JobView, SceneRegenerateRequest

__all__ = [
    "ApiResponse",
    "JobCreated",
    "JobView",
    "ResponseMeta",
    "SceneRegenerateRequest",
]
