"""
Webhook routes for Tencent Meeting and Lark.

Callback URLs to configure on the provider side:
- Tencent Meeting: https://your-domain/api/v1/webhooks/tencent
  (the same URL answers the GET handshake and the POST events)
- Lark: https://your-domain/api/v1/webhooks/lark
  (subscribe to vc.meeting.all_meeting_ended_v1)

Responses are returned as soon as the event is queued; transcript work runs
in the queue worker.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from app.core.exceptions import WebhookDataFormatError, WebhookMissingParameterError
from app.api.deps import get_webhook_service
from app.schemas.meeting import Provider
from app.schemas.webhook import (
    TencentCallbackBody,
    WebhookHealthResponse,
)
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

TENCENT_ACK = "successfully received callback"


@router.get("/health", response_model=WebhookHealthResponse)
async def webhook_health(service: WebhookService = Depends(get_webhook_service)):
    """
    Check webhook endpoint health and configuration status.

    Use this endpoint to verify the webhook is accessible
    and properly configured.
    """
    providers = service.provider_status()
    ready = [name for name, ok in providers.items() if ok]

    return WebhookHealthResponse(
        status="ok",
        providers=providers,
        message=f"Webhooks ready for: {', '.join(ready)}" if ready else "No webhook provider configured",
    )


@router.get("/tencent", response_class=PlainTextResponse)
async def tencent_url_verification(
    check_str: Optional[str] = Query(None),
    timestamp: Optional[str] = Header(None),
    nonce: Optional[str] = Header(None),
    signature: Optional[str] = Header(None),
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Tencent Meeting callback URL handshake.

    Returns the decrypted check_str as plain text.
    """
    return PlainTextResponse(service.verify_tencent_url(check_str, timestamp, nonce, signature))


@router.post("/tencent", response_class=PlainTextResponse)
async def tencent_webhook(
    request: Request,
    timestamp: Optional[str] = Header(None),
    nonce: Optional[str] = Header(None),
    signature: Optional[str] = Header(None),
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Receive Tencent Meeting events.

    **Status codes:**
    - 200 `successfully received callback`: event queued (or ignored as unknown)
    - 400: missing headers or malformed event data
    - 403: invalid signature
    - 500: decryption or configuration failure (details only in server logs)
    """
    raw = await request.body()
    try:
        body = TencentCallbackBody.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.warning(f"Unreadable Tencent Meeting callback body: {e}")
        raise WebhookDataFormatError("body", "a JSON object") from e

    if not body.data:
        raise WebhookMissingParameterError(["data"])

    await service.receive_tencent_event(body.data, timestamp, nonce, signature)
    return PlainTextResponse(TENCENT_ACK)


@router.post("/lark")
async def lark_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Receive Lark events.

    Answers URL verification with `{"challenge": ...}` and events with
    `{"msg": "success"}`.
    """
    raw = await request.body()
    return await service.receive_lark_event(raw, request.headers)


@router.api_route("/{provider}", methods=["GET", "POST"], include_in_schema=False)
async def unknown_provider(provider: str):
    if provider in {p.value for p in Provider}:
        raise HTTPException(status_code=405, detail="Method Not Allowed")
    logger.warning(f"Webhook for unknown provider '{provider}'")
    raise HTTPException(status_code=404, detail=f"Unknown webhook provider '{provider}'")
