"""Authentication dependencies: API token for clients, HMAC for provider webhooks."""
from __future__ import annotations

import hashlib
import hmac
import logging
import os
from typing import Optional

from fastapi import HTTPException, Request

from ..errors import WebhookSignatureError

logger = logging.getLogger(__name__)

# Auth configuration: read from environment
API_AUTH_ENABLED: bool = os.environ.get("MEDIA_ENGINE_API_AUTH_ENABLED", "true").lower() in (
    "true", "1", "yes",
)
API_AUTH_TOKEN: str = os.environ.get("MEDIA_ENGINE_API_TOKEN", "")

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"
_SIGNATURE_PREFIX = "sha256="


def _request_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.headers.get("X-API-Key", "").strip() or None


async def require_auth(request: Request) -> None:
    """FastAPI dependency that enforces bearer-token / API-key authentication.

    Reads the token from ``Authorization: Bearer <token>`` or the
    ``X-API-Key`` header.  Returns immediately when auth is disabled
    (local dev mode).

    Raises
    ------
    HTTPException(401)
        If the token is missing, empty, or does not match.
    """
    if not API_AUTH_ENABLED:
        return

    if not API_AUTH_TOKEN:
        logger.warning(
            "API_AUTH_ENABLED is True but MEDIA_ENGINE_API_TOKEN is not set. "
            "All job requests will be rejected."
        )
        raise HTTPException(status_code=401, detail="Server auth token not configured")

    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    if not hmac.compare_digest(token, API_AUTH_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid authentication token")


def owner_id(request: Request) -> Optional[str]:
    """Caller identity used to namespace archived artifacts, if supplied."""
    return request.headers.get("X-User-Id", "").strip() or None


def sign_payload(body: bytes, secret: str) -> str:
    """Signature header value for *body*: ``sha256=<hex digest>``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """Check a provider webhook signature.  A blank *secret* disables the check.

    Raises
    ------
    WebhookSignatureError
        If the header is missing or does not match the body.
    """
    if not secret:
        return
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    if not hmac.compare_digest(signature.strip(), sign_payload(body, secret)):
        raise WebhookSignatureError("Invalid webhook signature")
