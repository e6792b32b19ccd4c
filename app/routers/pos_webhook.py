"""
POS Webhook Router
Receives Square and Shopify webhooks

Flow:
1. Verify provider HMAC signature over the raw body (401, fail closed)
2. Parse payload (400 on malformed JSON)
3. Claim the event in the idempotency ledger (503 if the ledger is down)
4. Route to the provider handler: record the purchase, queue the SMS
5. Any handler failure releases the claim and answers 500 so the provider retries
"""

import json
from typing import Callable, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
import structlog
from app.middleware import get_correlation_id

from app.config import settings
from app.models.webhook_schemas import SquareWebhookEvent, WebhookResponse
from app.services.errors import IdempotencyStoreUnavailable
from app.services.square_webhook import verify_square_signature
from app.services.shopify_webhook import verify_shopify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/webhooks", tags=["pos-webhooks"])


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        logger.warning("webhook_service_unavailable", service=name)
        raise HTTPException(status_code=503, detail="Webhook processing requires a configured database")
    return service


async def _run_handler(process: Callable[[], dict], provider: str, event_id: str) -> WebhookResponse:
    try:
        result = await run_in_threadpool(process)
    except IdempotencyStoreUnavailable:
        raise HTTPException(status_code=503, detail="Idempotency store unavailable")
    except ValidationError as e:
        logger.warning("webhook_payload_invalid", provider=provider, event_id=event_id, error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    except Exception as e:
        logger.error("webhook_handler_failed", provider=provider, event_id=event_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    status = result.get("status", "processed")
    if status == "duplicate":
        message = "Event already processed"
    elif status == "ignored":
        message = f"Event type '{result.get('event_type')}' not processed"
    else:
        message = result.get("reason") or result.get("action") or "processed"

    return WebhookResponse(
        status=status,
        message=message,
        transaction_id=result.get("transaction_id"),
        sms_status=result.get("sms_status")
    )


@router.post("/square", response_model=WebhookResponse)
async def receive_square_webhook(
    request: Request,
    x_square_hmacsha256_signature: Optional[str] = Header(None, alias="x-square-hmacsha256-signature")
):
    """
    Receive a Square webhook.

    Headers:
        x-square-hmacsha256-signature: Base64 HMAC-SHA256 of notification URL + body
    """
    body = await request.body()

    if not verify_square_signature(
        body,
        x_square_hmacsha256_signature,
        settings.square_webhook_signature_key,
        settings.square_notification_url
    ):
        logger.warning("invalid_square_webhook_signature", configured=bool(settings.square_webhook_signature_key))
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = SquareWebhookEvent.model_validate_json(body)
    except ValidationError as e:
        logger.error("square_webhook_parse_error", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info("square_webhook_received", event_id=event.event_id, event_type=event.type, merchant_id=event.merchant_id)

    service = _service(request, "square_webhooks")
    current_correlation_id = get_correlation_id()
    return await _run_handler(
        lambda: service.process(event, correlation_id=current_correlation_id),
        provider="square",
        event_id=event.event_id
    )


@router.post("/shopify", response_model=WebhookResponse)
async def receive_shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="x-shopify-hmac-sha256"),
    x_shopify_topic: Optional[str] = Header(None, alias="x-shopify-topic"),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="x-shopify-shop-domain")
):
    """
    Receive a Shopify webhook.

    Headers:
        x-shopify-hmac-sha256: Base64 HMAC-SHA256 of the body
        x-shopify-topic: e.g. orders/create
        x-shopify-shop-domain: shop the event belongs to
    """
    body = await request.body()

    if not verify_shopify_signature(body, x_shopify_hmac_sha256, settings.shopify_api_secret):
        logger.warning("invalid_shopify_webhook_signature", configured=bool(settings.shopify_api_secret))
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error("shopify_webhook_parse_error", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(payload, dict) or payload.get("id") is None or not x_shopify_topic:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info("shopify_webhook_received", topic=x_shopify_topic, shop_domain=x_shopify_shop_domain, payload_id=payload.get("id"))

    service = _service(request, "shopify_webhooks")
    current_correlation_id = get_correlation_id()
    return await _run_handler(
        lambda: service.process(payload, x_shopify_topic, x_shopify_shop_domain, correlation_id=current_correlation_id),
        provider="shopify",
        event_id=f"{payload.get('id')}-{x_shopify_topic}"
    )
