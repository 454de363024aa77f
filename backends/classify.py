"""
Map provider HTTP failures onto the pipeline error taxonomy.
"""
from __future__ import annotations

from typing import Optional

from ..api.jobs.exceptions import (
    BackendFailure,
    ContentPolicyError,
    GenerationError,
    QuotaOrRateLimitError,
)

_POLICY_KEYWORDS = (
    "violat", "usage guidelines", "safety", "content polic",
    "responsible ai", "nsfw", "content_filter", "image_safety",
)

# Gateway-level timeouts worth resubmitting before counting a failure.
_GATEWAY_TIMEOUT_CODES = (502, 503, 504)


def is_content_policy_message(text: Optional[str]) -> bool:
    """Return True when a provider message reads like a safety rejection."""
    if not text:
        return False
    lowered = text.lower()
    return any(kw in lowered for kw in _POLICY_KEYWORDS)


def is_gateway_timeout(exc: BaseException) -> bool:
    """Return True only for transient gateway errors worth an immediate retry."""
    if isinstance(exc, BackendFailure):
        if exc.status_code in _GATEWAY_TIMEOUT_CODES:
            return True
        return "timeout" in str(exc).lower() or "timed out" in str(exc).lower()
    return False


def classify_http_error(status_code: int, body: str, backend: str) -> GenerationError:
    """Build the taxonomy error for a non-2xx provider response."""
    detail = (body or "").strip()[:300]
    if status_code == 402:
        return QuotaOrRateLimitError(
            f"{backend}: insufficient credit (402)", backend=backend, status_code=status_code
        )
    if status_code == 429:
        return QuotaOrRateLimitError(
            f"{backend}: rate limited (429)", backend=backend, status_code=status_code
        )
    if 400 <= status_code < 500 and is_content_policy_message(detail):
        return ContentPolicyError(backend=backend)
    return BackendFailure(
        f"{backend}: HTTP {status_code} {detail}".rstrip(),
        backend=backend,
        status_code=status_code,
    )
