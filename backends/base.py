"""
Shared backend protocol and value types for generation providers.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


class PredictionState(str, enum.Enum):
    starting = "starting"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"


TERMINAL_PREDICTION_STATES = frozenset({
    PredictionState.succeeded, PredictionState.failed, PredictionState.canceled,
})


@dataclass(frozen=True)
class PredictionHandle:
    """Opaque reference to an in-flight external prediction."""
    prediction_id: str
    backend: str
    media: str


@dataclass
class PredictionStatus:
    """One status check.  ``urls`` is filled by the backend's output adapter."""
    state: PredictionState
    urls: List[str] = field(default_factory=list)
    error: Optional[str] = None
    raw_output: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_PREDICTION_STATES


@dataclass
class BackendResponse:
    """Either ready-made artifact URLs or a handle to poll."""
    backend: str
    outputs: List[str] = field(default_factory=list)
    handle: Optional[PredictionHandle] = None

    @property
    def pending(self) -> bool:
        return self.handle is not None and not self.outputs


@dataclass
class GenerationRequest:
    """Provider-neutral generation input; input builders map it per model."""
    prompt: str = ""
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    num_outputs: int = 1
    seed: Optional[int] = None
    steps: Optional[int] = None
    guidance: Optional[float] = None
    duration: Optional[int] = None
    fps: Optional[int] = None
    aspect_ratio: Optional[str] = None
    image_url: Optional[str] = None
    scale: Optional[int] = None
    reference_images: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


class GenerationBackend(Protocol):
    """Minimal interface every generation provider implements.

    ``submit`` raises from the ``api.jobs.exceptions`` taxonomy so the
    fallback chain can decide whether to advance.
    """

    name: str
    media: str

    def available(self) -> bool:
        """Return whether the backend has the credentials it needs."""
        ...

    async def submit(self, request: GenerationRequest) -> BackendResponse:
        ...

    async def status(self, handle: PredictionHandle) -> PredictionStatus:
        ...

    async def cancel(self, handle: PredictionHandle) -> None:
        ...

    def extract_urls(self, output: Any) -> List[str]:
        """Pull result URLs out of a provider output payload."""
        ...
