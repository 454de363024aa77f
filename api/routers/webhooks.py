"""Provider completion webhooks."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from ..config import ApiSettings
from ..deps.auth import WEBHOOK_SIGNATURE_HEADER, verify_webhook_signature
from ..deps.providers import get_dispatcher, get_settings
from ..jobs.dispatcher import PipelineDispatcher
from ..jobs.exceptions import InvalidRequestError
from ..schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/predictions")
async def prediction_webhook(
    request: Request,
    settings: ApiSettings = Depends(get_settings),
    dispatcher: PipelineDispatcher = Depends(get_dispatcher),
) -> ApiResponse:
    """Finalise a single-prediction job from its provider's completion call.

    Unknown predictions, stages that the running pipeline still owns, and
    jobs that are already terminal are acknowledged without changes.
    """
    body = await request.body()
    verify_webhook_signature(body, request.headers.get(WEBHOOK_SIGNATURE_HEADER), settings.webhook_secret)
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise InvalidRequestError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Webhook body must be a JSON object")

    rec = await dispatcher.finalize_from_webhook(payload)
    if rec is None:
        logger.debug("Webhook for prediction %s ignored", payload.get("id"))
        return ApiResponse.success({"handled": False})
    return ApiResponse.success({"handled": True, "job_id": rec.job_id, "status": rec.status.value})
