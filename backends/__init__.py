"""Generation backends: the external providers predictions run on."""
from .base import (
    BackendResponse,
    GenerationBackend,
    GenerationRequest,
    PredictionHandle,
    PredictionState,
    PredictionStatus,
)
from .registry import build_chains, get_backend_factory, list_backend_kinds, register_backend

__all__ = [
    "BackendResponse",
    "GenerationBackend",
    "GenerationRequest",
    "PredictionHandle",
    "PredictionState",
    "PredictionStatus",
    "build_chains",
    "get_backend_factory",
    "list_backend_kinds",
    "register_backend",
]
