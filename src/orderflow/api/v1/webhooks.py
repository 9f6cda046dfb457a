"""
Inbound webhook API endpoints.

Carriers and the payment provider post their notifications here. A webhook
is acknowledged with 202 as soon as it is durably stored; classification
and its effects on orders happen in a background task.
"""

import json
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from orderflow.api.deps import AppSettings, Webhooks
from orderflow.api.errors import to_http_exception
from orderflow.api.limits import limiter
from orderflow.core.config import get_settings
from orderflow.core.exceptions import OrderflowError, WebhookSignatureError
from orderflow.core.logging import get_logger
from orderflow.database.models.webhook import WebhookSource
from orderflow.schemas.webhooks import WebhookAcceptedResponse
from orderflow.services.audit.ledger import Actor
from orderflow.services.webhooks.signatures import SIGNATURE_HEADER, verify_signature

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Webhook body is not valid JSON", "code": "INVALID_JSON"},
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Webhook body must be a JSON object", "code": "INVALID_JSON"},
        )
    return payload


@router.post(
    "/{source}",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Receive webhook",
    description="Store a carrier or payment notification and enqueue its processing",
)
@limiter.limit(get_settings().webhook_rate_limit)
async def receive_webhook(
    request: Request,
    source: WebhookSource,
    service: Webhooks,
    settings: AppSettings,
) -> WebhookAcceptedResponse:
    """
    Receive a webhook from a carrier or the payment provider.

    Args:
        request: FastAPI request object
        source: Sender of the webhook
        service: Webhook service
        settings: Application settings

    Returns:
        WebhookAcceptedResponse: Stored webhook acknowledgement

    Raises:
        HTTPException: 401 for an invalid signature, 400 for a malformed body
    """
    body = await request.body()

    secret = settings.webhook_secret_for(source.value)
    if settings.verify_webhook_signatures and secret:
        if not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
            error = WebhookSignatureError(
                "Invalid webhook signature",
                source=source.value,
            )
            logger.warning(
                "Webhook signature verification failed",
                source=source.value,
                client_host=request.client.host if request.client else None,
            )
            raise to_http_exception(error)

    payload = _parse_payload(body)

    webhook = await service.ingest(
        source,
        payload,
        headers=dict(request.headers),
        event=request.query_params.get("event"),
        actor=Actor.api(source.value),
    )

    logger.info(
        "Webhook accepted",
        webhook_id=str(webhook.id),
        source=source.value,
        webhook_event=webhook.event,
    )
    return WebhookAcceptedResponse.model_validate(webhook)


@router.post(
    "/{webhook_id}/reprocess",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Reprocess webhook",
)
async def reprocess_webhook(
    webhook_id: UUID,
    service: Webhooks,
) -> WebhookAcceptedResponse:
    """
    Reset a stored webhook to pending and enqueue it again.

    Raises:
        HTTPException: 404 if the webhook does not exist
    """
    try:
        webhook = await service.reprocess(webhook_id, actor=Actor.api("api_v1"))
    except OrderflowError as e:
        logger.warning(
            "Webhook reprocess rejected",
            webhook_id=str(webhook_id),
            error_code=e.code,
            error=e.message,
        )
        raise to_http_exception(e)

    return WebhookAcceptedResponse.model_validate(webhook)
