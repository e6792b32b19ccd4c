"""
Square Webhook Service
Routes Square webhook events to purchase ingestion, refund cancellation,
location sync and OAuth revocation

Handled event types:
- payment.created / payment.updated   (status COMPLETED only)
- order.created / order.updated       (state COMPLETED only)
- refund.created / refund.updated     (status COMPLETED or APPROVED)
- customer.created / customer.updated (logged)
- location.created / location.updated (synced, new locations disabled)
- oauth.authorization.revoked
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.models.pos_location import PosLocation
from app.models.pos_transaction import SkipReason
from app.models.webhook_schemas import SquareWebhookEvent
from app.services.eligibility import PurchaseCandidate
from app.services.pos_webhooks import ProviderWebhookService, hmac_sha256_base64, signatures_match
from app.services.square_client import SquareClient


def verify_square_signature(
    raw_body: bytes,
    signature: Optional[str],
    signature_key: Optional[str],
    notification_url: Optional[str]
) -> bool:
    """
    Verify x-square-hmacsha256-signature.

    Square signs notification_url + raw body with the subscription's
    signature key: Base64(HMAC-SHA256(key, url + body)).
    Returns False when the key or URL is not configured.
    """
    if not signature_key or not notification_url:
        return False
    expected = hmac_sha256_base64(signature_key, notification_url.encode("utf-8") + raw_body)
    return signatures_match(expected, signature)


def _money_to_decimal(money: Optional[dict]) -> Optional[Decimal]:
    """Square amounts are integer cents."""
    if not money or money.get("amount") is None:
        return None
    return Decimal(money["amount"]) / 100


class SquareWebhookService(ProviderWebhookService):
    """
    Square webhook handling on top of the shared claim-then-route flow.
    """

    provider = "square"

    def __init__(self, session_factory, ledger, ingestor, square_client: SquareClient):
        super().__init__(session_factory, ledger, ingestor)
        self.square_client = square_client

    def handlers(self) -> dict:
        return {
            "payment.created": self.handle_payment,
            "payment.updated": self.handle_payment,
            "order.created": self.handle_order,
            "order.updated": self.handle_order,
            "refund.created": self.handle_refund,
            "refund.updated": self.handle_refund,
            "customer.created": self.handle_customer,
            "customer.updated": self.handle_customer,
            "location.created": self.handle_location,
            "location.updated": self.handle_location,
            "oauth.authorization.revoked": self.handle_oauth_revoked,
        }

    def process(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        return self.process_event(event.event_id, event.type, event, correlation_id)

    # --- purchases ---

    def handle_payment(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        payment = event.data.object.get("payment")
        if not payment:
            return {"action": "skipped", "reason": "no_payment_data"}
        if payment.get("status") != "COMPLETED":
            return {"action": "skipped", "reason": "payment_not_completed"}

        return self._ingest_purchase(
            merchant_id=event.merchant_id,
            external_id=payment.get("id"),
            location_id=payment.get("location_id"),
            customer_id=payment.get("customer_id"),
            amount=_money_to_decimal(payment.get("total_money") or payment.get("amount_money")),
            source="payment",
            correlation_id=correlation_id
        )

    def handle_order(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        order = event.data.object.get("order")
        if not order:
            # order.updated carries order_updated with a state only
            order = event.data.object.get("order_updated") or event.data.object.get("order_created")
        if not order:
            return {"action": "skipped", "reason": "no_order_data"}
        if order.get("state") != "COMPLETED":
            return {"action": "skipped", "reason": "order_not_completed"}

        return self._ingest_purchase(
            merchant_id=event.merchant_id,
            external_id=order.get("id") or order.get("order_id"),
            location_id=order.get("location_id"),
            customer_id=order.get("customer_id"),
            amount=_money_to_decimal(order.get("total_money")),
            source="order",
            correlation_id=correlation_id
        )

    def _ingest_purchase(
        self,
        merchant_id: Optional[str],
        external_id: Optional[str],
        location_id: Optional[str],
        customer_id: Optional[str],
        amount: Optional[Decimal],
        source: str,
        correlation_id: Optional[str]
    ) -> dict:
        if not external_id:
            return {"action": "skipped", "reason": f"no_{source}_id"}

        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, merchant_id=merchant_id)
            if integration is None:
                self.logger.info("square_integration_not_found", merchant_id=merchant_id)
                return {"action": "skipped", "reason": "no_integration"}

            integration_id = integration.id
            access_token = integration.access_token
            location = self.find_location(session, integration_id, location_id)
            location_enabled = bool(location and location.is_enabled)
            location_name = location.location_name if location else None
        finally:
            session.close()

        candidate = PurchaseCandidate(
            external_transaction_id=str(external_id),
            purchase_amount=amount,
            location_name=location_name
        )

        if not location_enabled:
            self.logger.info("square_location_not_enabled", location_id=location_id, integration_id=integration_id)
            return self._result(self.ingestor.record_skip(integration_id, candidate, SkipReason.location_disabled))

        # Payment and order events for the same sale arrive separately
        if self.ingestor.exists(integration_id, candidate.external_transaction_id):
            return {"action": "skipped", "reason": "already_processed"}

        if not customer_id:
            return self._result(self.ingestor.record_skip(
                integration_id, candidate, SkipReason.no_phone, f"No customer ID in {source}"
            ))

        if not access_token:
            self.logger.warning("square_access_token_missing", integration_id=integration_id)
            return {"action": "skipped", "reason": "no_access_token"}

        # SquareApiError propagates: the claim is released and Square redelivers
        customer = self.square_client.fetch_customer(access_token, customer_id)
        if customer:
            full_name = f"{customer.get('given_name') or ''} {customer.get('family_name') or ''}".strip()
            candidate.customer_name = full_name or None

        if not customer or not customer.get("phone_number"):
            return self._result(self.ingestor.record_skip(integration_id, candidate, SkipReason.no_phone))

        candidate.customer_phone = customer["phone_number"]
        return self._result(self.ingestor.ingest(integration_id, candidate, correlation_id=correlation_id))

    @staticmethod
    def _result(ingested) -> dict:
        return {
            "action": "transaction_recorded" if ingested.created else "already_processed",
            "transaction_id": ingested.transaction_id,
            "sms_status": ingested.status,
        }

    # --- refunds ---

    def handle_refund(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        refund = event.data.object.get("refund")
        if not refund:
            return {"action": "skipped", "reason": "no_refund_data"}
        if refund.get("status") not in ("COMPLETED", "APPROVED"):
            return {"action": "skipped", "reason": "refund_not_completed"}

        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, active_only=False, merchant_id=event.merchant_id)
            integration_id = integration.id if integration else None
        finally:
            session.close()

        if integration_id is None:
            return {"action": "skipped", "reason": "no_integration"}

        cancelled = self.ingestor.mark_refunded(integration_id, [refund.get("payment_id"), refund.get("order_id")])
        if cancelled:
            return {"action": "transaction_marked_refunded", "transaction_id": cancelled}
        return {"action": "refund_logged"}

    # --- bookkeeping events ---

    def handle_customer(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        customer = event.data.object.get("customer")
        if not customer:
            return {"action": "skipped", "reason": "no_customer_data"}
        self.logger.info("square_customer_event", event_type=event.type, customer_id=customer.get("id"))
        return {"action": "customer_event_logged"}

    def handle_location(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        location_data = event.data.object.get("location") or {}
        location_id = location_data.get("id") or event.data.id
        if not location_id:
            return {"action": "skipped", "reason": "no_location_data"}

        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, merchant_id=event.merchant_id)
            if integration is None:
                return {"action": "skipped", "reason": "no_integration"}

            name = location_data.get("name") or location_id
            location = self.find_location(session, integration.id, location_id)
            if location is None:
                location = PosLocation(
                    pos_integration_id=integration.id,
                    external_location_id=str(location_id),
                    location_name=name,
                    is_enabled=False
                )
                session.add(location)
                action = "location_added"
            else:
                location.location_name = name
                action = "location_updated"
            session.commit()

            self.logger.info("square_location_synced", location_id=location_id, action=action, enabled=location.is_enabled)
            return {"action": action, "location_id": location.id}
        finally:
            session.close()

    def handle_oauth_revoked(self, event: SquareWebhookEvent, correlation_id: Optional[str] = None) -> dict:
        return self.deactivate_integration(merchant_id=event.merchant_id)
