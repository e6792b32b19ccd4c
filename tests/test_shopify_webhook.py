"""
Tests for Shopify webhook handling
"""

import pytest
from pydantic import ValidationError

from app.models.pos_integration import PosIntegration
from app.models.pos_transaction import PosTransaction
from app.models.pos_webhook_event import PosWebhookEvent
from app.models.webhook_schemas import ShopifyOrder
from app.services.idempotency import IdempotencyLedger
from app.services.pos_transactions import TransactionIngestor
from app.services.shopify_webhook import ShopifyWebhookService, order_contact, shopify_event_id

SHOP = "corner-bakery.myshopify.com"


@pytest.fixture
def service(session_factory, send_queue):
    ingestor = TransactionIngestor(session_factory, send_queue)
    return ShopifyWebhookService(session_factory, IdempotencyLedger(session_factory), ingestor)


@pytest.fixture
def shop(make_account, make_integration):
    account_id = make_account()
    return account_id, make_integration(account_id, "shopify", shop_domain=SHOP)


def order(order_id=820982911946154508, **overrides):
    payload = {
        "id": order_id,
        "name": "#1001",
        "total_price": "19.99",
        "source_name": "web",
        "customer": {"id": 1, "first_name": "Jane", "last_name": "Doe", "phone": None},
        "shipping_address": {"phone": "+1 (415) 555-2671"},
        "billing_address": {"phone": "+1 212 555 0100"},
    }
    payload.update(overrides)
    return payload


class TestOrderContact:

    def test_customer_phone_wins(self):
        contact = order_contact(ShopifyOrder.model_validate(order(customer={"first_name": "Jane", "phone": "4155550000"})))
        assert contact == ("Jane", "4155550000")

    def test_falls_back_to_shipping_then_billing(self):
        assert order_contact(ShopifyOrder.model_validate(order()))[1] == "+1 (415) 555-2671"
        assert order_contact(ShopifyOrder.model_validate(order(shipping_address=None)))[1] == "+1 212 555 0100"


class TestOrdersCreate:

    def test_order_is_queued(self, service, shop, db):
        result = service.process(order(), "orders/create", SHOP, correlation_id="req-1")

        assert result["status"] == "processed"
        assert result["sms_status"] == "pending"
        row = db.query(PosTransaction).one()
        assert row.external_transaction_id == "820982911946154508"
        assert row.customer_name == "Jane Doe"
        assert row.location_name == "web"

    def test_duplicate_delivery(self, service, shop, db):
        service.process(order(), "orders/create", SHOP)
        result = service.process(order(), "orders/create", SHOP)

        assert result["status"] == "duplicate"
        assert db.query(PosTransaction).count() == 1

    def test_claim_key_includes_topic(self):
        assert shopify_event_id({"id": 5}, "orders/create") == "5-orders/create"

    def test_invalid_order_releases_claim(self, service, shop, db):
        with pytest.raises(ValidationError):
            service.process({"id": "not-a-number"}, "orders/create", SHOP)

        assert db.query(PosWebhookEvent).count() == 0

    def test_unknown_shop(self, service, db):
        result = service.process(order(), "orders/create", "other.myshopify.com")

        assert result["reason"] == "no_integration"
        assert db.query(PosTransaction).count() == 0

    def test_disabled_pos_location(self, service, shop, make_location, db):
        _, integration_id = shop
        make_location(integration_id, "555", is_enabled=False, name="Pop-up")

        result = service.process(order(location_id=555), "orders/create", SHOP)

        assert result["sms_status"] == "skipped_location_disabled"


class TestOtherTopics:

    def test_refund_cancels_pending_request(self, service, shop, db):
        service.process(order(order_id=1001), "orders/create", SHOP)

        result = service.process({"id": 77, "order_id": 1001}, "refunds/create", SHOP)

        assert result["action"] == "transaction_marked_refunded"
        assert db.query(PosTransaction).one().sms_status == "skipped_refunded"

    def test_app_uninstalled(self, service, shop, db):
        _, integration_id = shop

        result = service.process({"id": 1, "domain": SHOP}, "app/uninstalled", SHOP)

        assert result["action"] == "integration_deactivated"
        assert db.query(PosIntegration).filter(PosIntegration.id == integration_id).one().is_active is False

    def test_unhandled_topic(self, service, db):
        result = service.process({"id": 1}, "products/update", SHOP)

        assert result["status"] == "ignored"
        assert db.query(PosWebhookEvent).count() == 0
