"""Conversation provider webhooks.

The provider posts a ``post_call_transcription`` event once a
conversation finishes. Events are signature-checked before parsing and
acknowledged with 200 even when they match no session, so the provider
does not retry them.
"""
import json
from typing import Any

from fastapi import APIRouter, Request

from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.core.exceptions import ValidationError
from callpanion.core.logging import get_logger
from callpanion.dependencies import OrchestratorDep, WebhookValidatorDep


router = APIRouter(prefix="/webhooks")
log = get_logger(__name__)


@router.post("/conversation")
@limiter.limit(RateLimits.WEBHOOK)
async def conversation_webhook(
    request: Request,
    validator: WebhookValidatorDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Apply a post-call event from the conversation provider."""
    body = await validator.validate_request(request)

    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    log.info("Conversation webhook received", webhook_type=payload.get("type"))

    call = await orchestrator.handle_provider_callback(payload)
    if call is None:
        return {"status": "ignored"}
    return {"status": "ok", "session_id": str(call.id), "state": call.state}
