"""
Chat-completions image gateway backend.

Returns images synchronously (usually as ``data:`` URLs), so it never
hands out a prediction handle.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..api.jobs.exceptions import BackendFailure, ContentPolicyError
from .base import BackendResponse, GenerationRequest, PredictionHandle, PredictionState, PredictionStatus
from .classify import classify_http_error

logger = logging.getLogger(__name__)

SAFETY_BLOCK_MESSAGE = (
    "Content blocked by safety filters. Please avoid prompts with violence, weapons, gore, "
    "adult content, or other sensitive topics. Try describing peaceful or creative scenes instead."
)


def _image_prompt(request: GenerationRequest) -> str:
    prompt = request.prompt
    if request.negative_prompt:
        prompt = f"{prompt}. Avoid: {request.negative_prompt}"
    if request.width and request.height:
        prompt = f"{prompt}. Aspect ratio {request.width}x{request.height}."
    return prompt


class ChatImageGatewayBackend:
    """One model behind an OpenAI-compatible gateway with image modality."""

    def __init__(
        self,
        name: str,
        media: str,
        *,
        model: str,
        url: str,
        api_key: str = "",
        timeout_s: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name
        self.media = media
        self.model = model
        self._url = url
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    def available(self) -> bool:
        return bool(self._api_key)

    async def submit(self, request: GenerationRequest) -> BackendResponse:
        urls: List[str] = []
        for _ in range(max(1, request.num_outputs)):
            urls.extend(await self._generate_one(request))
        return BackendResponse(backend=self.name, outputs=urls)

    async def status(self, handle: PredictionHandle) -> PredictionStatus:
        # Nothing to poll: results are returned from submit().
        return PredictionStatus(state=PredictionState.failed, error=f"{self.name} has no predictions")

    async def cancel(self, handle: PredictionHandle) -> None:
        return None

    def extract_urls(self, output: Any) -> List[str]:
        """Image URLs (usually data URLs) from a chat completion message."""
        if not isinstance(output, dict):
            return []
        images = [
            (img.get("image_url") or {}).get("url")
            for img in (output.get("images") or [])
            if isinstance(img, dict)
        ]
        return [u for u in images if u]

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _generate_one(self, request: GenerationRequest) -> List[str]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": _image_prompt(request)}],
            "modalities": ["image", "text"],
        }
        try:
            resp = await self._client.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise BackendFailure(f"{self.name}: {type(exc).__name__}: {exc}", backend=self.name) from exc
        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text, self.name)

        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendFailure(f"{self.name}: malformed JSON response", backend=self.name) from exc
        if not isinstance(data, dict):
            raise BackendFailure(f"{self.name}: unexpected response body", backend=self.name)
        choice = (data.get("choices") or [{}])[0]
        if not isinstance(choice, dict):
            raise BackendFailure(f"{self.name}: unexpected response body", backend=self.name)
        if choice.get("native_finish_reason") == "IMAGE_SAFETY" or choice.get("finish_reason") == "content_filter":
            raise ContentPolicyError(SAFETY_BLOCK_MESSAGE, backend=self.name)

        message = choice.get("message") or {}
        images = self.extract_urls(message)
        if not images:
            if message.get("content"):
                raise BackendFailure(
                    f"{self.name}: model returned text instead of an image", backend=self.name
                )
            raise BackendFailure(f"{self.name}: no images in response", backend=self.name)
        return images
