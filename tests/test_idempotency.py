"""
Tests for the webhook idempotency ledger

Tests cover:
- Single claim per (provider, event_id) under concurrent deliveries
- Claim release when the handler fails
- Fail-closed behavior when the store is unreachable
- Retention cleanup
"""

import threading
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from app.models.pos_webhook_event import PosWebhookEvent
from app.services.errors import IdempotencyStoreUnavailable
from app.services.idempotency import IdempotencyLedger


@pytest.fixture
def ledger(session_factory):
    return IdempotencyLedger(session_factory)


class TestClaim:

    def test_first_claim_wins(self, ledger):
        assert ledger.claim("square", "evt_1", "payment.created") is True
        assert ledger.claim("square", "evt_1", "payment.created") is False

    def test_claims_are_scoped_by_provider(self, ledger):
        assert ledger.claim("square", "1001", None) is True
        assert ledger.claim("shopify", "1001", None) is True

    def test_concurrent_claims_have_one_winner(self, ledger):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            claimed = ledger.claim("square", "evt_race", "payment.created")
            with lock:
                results.append(claimed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7

    def test_store_unreachable_fails_closed(self):
        session = Mock()
        session.get_bind.return_value.dialect.name = "postgresql"
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))
        ledger = IdempotencyLedger(Mock(return_value=session))

        with pytest.raises(IdempotencyStoreUnavailable):
            ledger.claim("square", "evt_1", None)

        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestRunClaimed:

    def test_runs_handler_once(self, ledger):
        handler = Mock(return_value={"action": "transaction_recorded"})

        first = ledger.run_claimed("square", "evt_1", "payment.created", handler)
        second = ledger.run_claimed("square", "evt_1", "payment.created", handler)

        assert first == (True, {"action": "transaction_recorded"})
        assert second == (False, None)
        handler.assert_called_once()

    def test_failed_handler_releases_claim(self, ledger):
        def crash():
            raise RuntimeError("database hiccup")

        with pytest.raises(RuntimeError):
            ledger.run_claimed("square", "evt_1", "payment.created", crash)

        # Provider redelivery is processed
        claimed, result = ledger.run_claimed("square", "evt_1", "payment.created", lambda: {"action": "ok"})
        assert claimed is True
        assert result == {"action": "ok"}


class TestCleanup:

    def test_deletes_only_expired_claims(self, ledger, db):
        db.add(PosWebhookEvent(provider="square", event_id="old", claimed_at=datetime.utcnow() - timedelta(days=8)))
        db.add(PosWebhookEvent(provider="square", event_id="new", claimed_at=datetime.utcnow() - timedelta(days=1)))
        db.commit()

        deleted = ledger.cleanup(retention_days=7)

        assert deleted == 1
        remaining = [row.event_id for row in db.query(PosWebhookEvent).all()]
        assert remaining == ["new"]
