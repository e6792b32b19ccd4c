"""
Tests for the transaction ingestor

Tests cover:
- Eligible purchases are recorded pending and queued
- Skipped purchases are recorded with the skip reason and not queued
- Duplicate purchases return the existing row
- Recent contact window across transactions
- Queue failure marks the transaction failed
- Refund cancellation of pending requests
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from app.models.pos_transaction import PosTransaction, SkipReason
from app.models.send_job import SendJob
from app.services.eligibility import PurchaseCandidate
from app.services.pos_transactions import TransactionIngestor


@pytest.fixture
def integration(make_account, make_integration):
    account_id = make_account()
    return account_id, make_integration(account_id)


@pytest.fixture
def ingestor(session_factory, send_queue):
    return TransactionIngestor(session_factory, send_queue, window_days=30)


def purchase(external_id="PAY_1", phone="(415) 555-2671", name="Jane Doe"):
    return PurchaseCandidate(
        external_transaction_id=external_id,
        customer_name=name,
        customer_phone=phone,
        purchase_amount=Decimal("42.50"),
        location_name="Main Street"
    )


class TestIngest:

    def test_eligible_purchase_is_queued(self, ingestor, integration, db):
        account_id, integration_id = integration

        result = ingestor.ingest(integration_id, purchase(), correlation_id="req-1")

        assert result.created is True
        assert result.status == "pending"
        assert result.job_id is not None

        row = db.query(PosTransaction).filter(PosTransaction.id == result.transaction_id).one()
        assert row.customer_phone == "+14155552671"
        assert row.purchase_amount == Decimal("42.50")

        job = db.query(SendJob).filter(SendJob.job_id == result.job_id).one()
        assert job.payload["target_phone"] == "+14155552671"
        assert job.payload["business_name"] == "Corner Bakery"
        assert job.payload["account_id"] == account_id

    def test_skipped_purchase_is_recorded_not_queued(self, ingestor, integration, db):
        _, integration_id = integration

        result = ingestor.ingest(integration_id, purchase(phone="+44 20 7946 0958"))

        assert result.status == "skipped_non_us_number"
        assert result.job_id is None
        row = db.query(PosTransaction).one()
        assert row.skip_reason == "Non-US phone number"
        assert db.query(SendJob).count() == 0

    def test_duplicate_purchase_returns_existing_row(self, ingestor, integration, db):
        _, integration_id = integration

        first = ingestor.ingest(integration_id, purchase())
        second = ingestor.ingest(integration_id, purchase())

        assert second.created is False
        assert second.transaction_id == first.transaction_id
        assert db.query(PosTransaction).count() == 1
        assert db.query(SendJob).count() == 1

    def test_recent_contact_skips_second_purchase(self, ingestor, integration):
        _, integration_id = integration

        ingestor.ingest(integration_id, purchase("PAY_1"))
        result = ingestor.ingest(integration_id, purchase("PAY_2", phone="415.555.2671"))

        assert result.status == "skipped_recently_contacted"
        assert result.reason == "Contacted within last 30 days"

    def test_contact_outside_window_is_eligible(self, ingestor, integration, make_transaction):
        account_id, integration_id = integration
        make_transaction(
            account_id,
            integration_id,
            "PAY_OLD",
            sms_status="sent",
            created_at=datetime.utcnow() - timedelta(days=31)
        )

        result = ingestor.ingest(integration_id, purchase("PAY_NEW"))

        assert result.status == "pending"

    def test_failed_contact_does_not_count(self, ingestor, integration, make_transaction):
        account_id, integration_id = integration
        make_transaction(account_id, integration_id, "PAY_OLD", sms_status="failed")

        result = ingestor.ingest(integration_id, purchase("PAY_NEW"))

        assert result.status == "pending"

    def test_queue_failure_marks_transaction_failed(self, session_factory, integration, db):
        _, integration_id = integration
        broken_queue = Mock()
        broken_queue.enqueue.side_effect = ConnectionError("redis down")
        ingestor = TransactionIngestor(session_factory, broken_queue)

        result = ingestor.ingest(integration_id, purchase())

        assert result.status == "failed"
        row = db.query(PosTransaction).one()
        assert row.sms_status == "failed"
        assert row.skip_reason == "Failed to queue SMS: redis down"

    def test_unknown_integration(self, ingestor):
        with pytest.raises(LookupError):
            ingestor.ingest(9999, purchase())


class TestRecordSkip:

    def test_records_location_disabled(self, ingestor, integration, db):
        _, integration_id = integration

        result = ingestor.record_skip(integration_id, purchase(), SkipReason.location_disabled)

        assert result.status == "skipped_location_disabled"
        assert db.query(PosTransaction).one().skip_reason == "Location not enabled"

    def test_custom_message(self, ingestor, integration, db):
        _, integration_id = integration

        ingestor.record_skip(integration_id, purchase(phone=None), SkipReason.no_phone, "No customer ID in payment")

        assert db.query(PosTransaction).one().skip_reason == "No customer ID in payment"


class TestMarkRefunded:

    def test_cancels_pending_request(self, ingestor, integration, db):
        _, integration_id = integration
        ingested = ingestor.ingest(integration_id, purchase("PAY_1"))

        cancelled = ingestor.mark_refunded(integration_id, ["PAY_1", None])

        assert cancelled == ingested.transaction_id
        row = db.query(PosTransaction).one()
        assert row.sms_status == "skipped_refunded"
        assert row.skip_reason == "Order was refunded"

    def test_sent_transaction_keeps_status(self, ingestor, integration, make_transaction, db):
        account_id, integration_id = integration
        make_transaction(account_id, integration_id, "PAY_1", sms_status="sent")

        assert ingestor.mark_refunded(integration_id, ["PAY_1"]) is None
        assert db.query(PosTransaction).one().sms_status == "sent"

    def test_unknown_purchase(self, ingestor, integration):
        _, integration_id = integration

        assert ingestor.mark_refunded(integration_id, ["PAY_UNKNOWN"]) is None
