"""Remote video stitching boundary."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from ..jobs.exceptions import BackendFailure, InvalidRequestError

logger = logging.getLogger(__name__)


@dataclass
class StitchEntry:
    video_url: str
    prompt: str
    duration: float
    order: int
    trim_start: float = 0.0
    trim_end: Optional[float] = None
    transition: str = "cut"


class Stitcher(Protocol):
    async def stitch(self, job_id: str, entries: List[StitchEntry], owner_id: Optional[str] = None) -> str:
        """Concatenate *entries* in ``order`` and return the stitched video URL."""
        ...


class HttpStitcher:
    """Posts scene lists to a stitching service and returns its output URL."""

    def __init__(self, service_url: Optional[str], *, timeout_s: float = 300.0,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.service_url = service_url
        self._timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    async def stitch(self, job_id: str, entries: List[StitchEntry], owner_id: Optional[str] = None) -> str:
        if not entries:
            raise InvalidRequestError("No scenes provided")
        if not self.service_url:
            raise BackendFailure("Stitching service not configured")
        ordered = sorted(entries, key=lambda e: e.order)
        body = {
            "jobId": job_id,
            "userId": owner_id,
            "scenes": [
                {
                    "videoUrl": e.video_url,
                    "prompt": e.prompt,
                    "duration": e.duration,
                    "order": e.order,
                    "trimStart": e.trim_start,
                    "trimEnd": e.trim_end if e.trim_end is not None else e.duration,
                    "transitionType": e.transition,
                }
                for e in ordered
            ],
        }
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        logger.info("Stitching %d scenes for job %s", len(ordered), job_id)
        try:
            resp = await self._client.post(self.service_url, json=body)
        except httpx.HTTPError as exc:
            raise BackendFailure(f"Stitching service unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendFailure(f"Stitching service returned HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendFailure("Stitching service returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise BackendFailure("Stitching service returned an unexpected body")
        url = data.get("url") or data.get("videoUrl") or data.get("stitchedUrl")
        if not url:
            raise BackendFailure("Stitching service returned no URL")
        return url

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
