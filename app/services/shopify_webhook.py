"""
Shopify Webhook Service
Routes Shopify webhook topics to purchase ingestion, refund cancellation
and uninstall handling

Shopify has no event id in the body, so the claim key is "{payload.id}-{topic}".
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.orm import Session

from app.models.pos_transaction import SkipReason
from app.models.webhook_schemas import ShopifyOrder, ShopifyRefund
from app.services.eligibility import PurchaseCandidate
from app.services.pos_webhooks import ProviderWebhookService, hmac_sha256_base64, signatures_match


def verify_shopify_signature(raw_body: bytes, signature: Optional[str], api_secret: Optional[str]) -> bool:
    """
    Verify x-shopify-hmac-sha256: Base64(HMAC-SHA256(app secret, raw body)).
    Returns False when the secret is not configured.
    """
    if not api_secret:
        return False
    return signatures_match(hmac_sha256_base64(api_secret, raw_body), signature)


def shopify_event_id(payload: dict, topic: str) -> str:
    return f"{payload.get('id')}-{topic}"


def _price_to_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def order_contact(order: ShopifyOrder) -> tuple[Optional[str], Optional[str]]:
    """
    Customer name and phone for an order.

    Phone precedence: customer, shipping address, billing address.
    """
    name = None
    phone = None
    if order.customer:
        name = f"{order.customer.first_name or ''} {order.customer.last_name or ''}".strip() or None
        phone = order.customer.phone
    if not phone and order.shipping_address and order.shipping_address.phone:
        phone = order.shipping_address.phone
    if not phone and order.billing_address and order.billing_address.phone:
        phone = order.billing_address.phone
    return name, phone


class ShopifyWebhookService(ProviderWebhookService):
    """
    Shopify webhook handling on top of the shared claim-then-route flow.
    """

    provider = "shopify"

    def handlers(self) -> dict:
        return {
            "orders/create": self.handle_order_created,
            "refunds/create": self.handle_refund_created,
            "app/uninstalled": self.handle_app_uninstalled,
        }

    def process(self, payload: dict, topic: str, shop_domain: Optional[str], correlation_id: Optional[str] = None) -> dict:
        event = {"payload": payload, "shop_domain": shop_domain}
        return self.process_event(shopify_event_id(payload, topic), topic, event, correlation_id)

    def handle_order_created(self, event: dict, correlation_id: Optional[str] = None) -> dict:
        # ValidationError propagates: the claim is released and the router answers 400
        order = ShopifyOrder.model_validate(event["payload"])
        shop_domain = event["shop_domain"]

        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, shop_domain=shop_domain)
            if integration is None:
                self.logger.info("shopify_integration_not_found", shop_domain=shop_domain)
                return {"action": "skipped", "reason": "no_integration"}

            integration_id = integration.id
            location_enabled = True
            location_name = None
            if order.location_id:
                location = self.find_location(session, integration_id, str(order.location_id))
                location_enabled = bool(location and location.is_enabled)
                location_name = location.location_name if location else None
        finally:
            session.close()

        customer_name, customer_phone = order_contact(order)
        candidate = PurchaseCandidate(
            external_transaction_id=str(order.id),
            customer_name=customer_name,
            customer_phone=customer_phone,
            purchase_amount=_price_to_decimal(order.total_price),
            location_name=location_name or order.source_name or "Online"
        )

        if not location_enabled:
            self.logger.info("shopify_location_not_enabled", location_id=order.location_id, integration_id=integration_id)
            candidate.location_name = None
            ingested = self.ingestor.record_skip(integration_id, candidate, SkipReason.location_disabled)
        else:
            ingested = self.ingestor.ingest(integration_id, candidate, correlation_id=correlation_id)

        return {
            "action": "transaction_recorded" if ingested.created else "already_processed",
            "transaction_id": ingested.transaction_id,
            "sms_status": ingested.status,
        }

    def handle_refund_created(self, event: dict, correlation_id: Optional[str] = None) -> dict:
        refund = ShopifyRefund.model_validate(event["payload"])

        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, active_only=False, shop_domain=event["shop_domain"])
            integration_id = integration.id if integration else None
        finally:
            session.close()

        if integration_id is None:
            return {"action": "skipped", "reason": "no_integration"}

        cancelled = self.ingestor.mark_refunded(integration_id, [str(refund.order_id)])
        if cancelled:
            return {"action": "transaction_marked_refunded", "transaction_id": cancelled}
        return {"action": "refund_logged"}

    def handle_app_uninstalled(self, event: dict, correlation_id: Optional[str] = None) -> dict:
        return self.deactivate_integration(shop_domain=event["shop_domain"])
