"""
Prediction-API backend (Replicate-style create / get / cancel over HTTP).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..api.jobs.exceptions import BackendFailure, ContentPolicyError
from .base import BackendResponse, GenerationRequest, PredictionHandle, PredictionState, PredictionStatus
from .classify import classify_http_error, is_content_policy_message, is_gateway_timeout
from .inputs import InputBuilder
from .output_adapters import OutputAdapter

logger = logging.getLogger(__name__)


class PredictionBackend:
    """One hosted model reached through the predictions API.

    ``model`` targets the model's latest version
    (``POST /models/{owner}/{name}/predictions``); ``version`` pins one
    (``POST /predictions``).  Creation is retried on gateway timeouts
    when ``submit_retries > 1``; everything else is classified and raised.
    """

    def __init__(
        self,
        name: str,
        media: str,
        *,
        inputs: InputBuilder,
        outputs: OutputAdapter,
        api_token: str = "",
        model: Optional[str] = None,
        version: Optional[str] = None,
        base_url: str = "https://api.replicate.com/v1",
        timeout_s: float = 60.0,
        submit_retries: int = 1,
        retry_backoff_s: float = 2.0,
        webhook_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not model and not version:
            raise ValueError(f"Backend '{name}' needs a model or a version")
        self.name = name
        self.media = media
        self.model = model
        self.version = version
        self._inputs = inputs
        self._outputs = outputs
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._submit_retries = max(1, int(submit_retries))
        self._retry_backoff_s = retry_backoff_s
        self._webhook_url = webhook_url
        self._client = client
        self._owns_client = client is None

    def available(self) -> bool:
        return bool(self._api_token)

    # ── Backend protocol ─────────────────────────────────────────────

    async def submit(self, request: GenerationRequest) -> BackendResponse:
        payload: Dict[str, Any] = {"input": self._inputs(request)}
        if self.version:
            path = "/predictions"
            payload["version"] = self.version
        else:
            path = f"/models/{self.model}/predictions"
        if self._webhook_url:
            payload["webhook"] = self._webhook_url
            payload["webhook_events_filter"] = ["completed"]

        data = await self._create(path, payload)
        state = _state(data.get("status"))
        if state == PredictionState.succeeded:
            urls = self.extract_urls(data.get("output"))
            if urls:
                return BackendResponse(backend=self.name, outputs=urls)
        if state == PredictionState.failed:
            raise self._failure(data.get("error"))
        prediction_id = data.get("id")
        if not prediction_id:
            raise BackendFailure(f"{self.name}: prediction response carried no id", backend=self.name)
        logger.info("%s prediction %s created (%s)", self.name, prediction_id, state.value)
        return BackendResponse(
            backend=self.name,
            handle=PredictionHandle(prediction_id=prediction_id, backend=self.name, media=self.media),
        )

    async def status(self, handle: PredictionHandle) -> PredictionStatus:
        data = await self._request("GET", f"/predictions/{handle.prediction_id}")
        return self.parse_status(data)

    async def cancel(self, handle: PredictionHandle) -> None:
        await self._request("POST", f"/predictions/{handle.prediction_id}/cancel")
        logger.info("Cancelled %s prediction %s", self.name, handle.prediction_id)

    def extract_urls(self, output: Any) -> List[str]:
        return self._outputs(output)

    def parse_status(self, data: Dict[str, Any]) -> PredictionStatus:
        """Build a status from a prediction payload (polled or webhook-delivered)."""
        state = _state(data.get("status"))
        output = data.get("output")
        urls = self.extract_urls(output) if state == PredictionState.succeeded else []
        error = data.get("error")
        return PredictionStatus(state=state, urls=urls, error=str(error) if error else None, raw_output=output)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── HTTP ─────────────────────────────────────────────────────────

    async def _create(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._submit_retries),
            wait=wait_exponential(multiplier=self._retry_backoff_s, min=self._retry_backoff_s),
            retry=retry_if_exception(is_gateway_timeout),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request("POST", path, payload)
        raise BackendFailure(f"{self.name}: prediction was never created", backend=self.name)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = self._get_client()
        try:
            resp = await client.request(
                method,
                f"{self._base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_token}"},
            )
        except httpx.TimeoutException as exc:
            raise BackendFailure(f"{self.name}: request timeout ({exc})", backend=self.name) from exc
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
        return data

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    def _failure(self, error: Any) -> Exception:
        message = str(error) if error else "Prediction failed"
        if is_content_policy_message(message):
            return ContentPolicyError(backend=self.name)
        return BackendFailure(f"{self.name}: {message}", backend=self.name)


def _state(raw: Any) -> PredictionState:
    try:
        return PredictionState(str(raw))
    except ValueError:
        return PredictionState.processing
