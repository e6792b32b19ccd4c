"""
Tests for the quota reservation service

Tests cover:
- Concurrent reservations never exceed the limit
- Commit keeps units, release returns them
- Settling a reservation twice is a no-op
- Settling inside a caller session commits only with the caller
- Denials (limit reached, past due, unknown account)
- Negative counters clamp to zero
- Redelivered jobs adopt their open reservation
- Stale reservation sweep
"""

import threading
from datetime import datetime, timedelta

import pytest

from app.models.account import Account
from app.models.quota_reservation import QuotaReservation
from app.services.quota import QuotaService, DenialReason


@pytest.fixture
def quota(session_factory):
    return QuotaService(session_factory)


def usage(session_factory, account_id):
    session = session_factory()
    try:
        return session.query(Account).filter(Account.id == account_id).one().sms_usage_count
    finally:
        session.close()


def reserve_concurrently(quota, account_id, workers):
    handles = []
    lock = threading.Lock()
    barrier = threading.Barrier(workers)

    def worker():
        barrier.wait()
        handle = quota.reserve(account_id)
        with lock:
            handles.append(handle)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return handles


class TestReserve:

    def test_reserve_counts_immediately(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=2, sms_usage_limit=10)

        handle = quota.reserve(account_id)

        assert handle.can_send is True
        assert handle.remaining == 7
        assert usage(session_factory, account_id) == 3

    def test_last_unit_goes_to_exactly_one_caller(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=9, sms_usage_limit=10)

        handles = reserve_concurrently(quota, account_id, workers=5)

        granted = [h for h in handles if h.can_send]
        denied = [h for h in handles if not h.can_send]
        assert len(granted) == 1
        assert len(denied) == 4
        assert all(h.reason is DenialReason.limit_reached for h in denied)
        assert usage(session_factory, account_id) == 10

    def test_concurrent_reservations_never_overshoot(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=0, sms_usage_limit=5)

        handles = reserve_concurrently(quota, account_id, workers=12)

        assert sum(1 for h in handles if h.can_send) == 5
        assert usage(session_factory, account_id) == 5

    def test_zero_limit_denies(self, quota, make_account):
        account_id = make_account(sms_usage_count=0, sms_usage_limit=0)

        handle = quota.reserve(account_id)

        assert handle.can_send is False
        assert handle.reason is DenialReason.limit_reached
        assert handle.remaining == 0

    def test_past_due_denies(self, quota, make_account, session_factory):
        account_id = make_account(subscription_status="past_due")

        handle = quota.reserve(account_id)

        assert handle.can_send is False
        assert handle.reason is DenialReason.payment_past_due
        assert usage(session_factory, account_id) == 0

    def test_unknown_account(self, quota):
        handle = quota.reserve(99999)

        assert handle.can_send is False
        assert handle.reason is DenialReason.account_not_found

    def test_negative_usage_treated_as_zero(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=-4, sms_usage_limit=10)

        handle = quota.reserve(account_id)

        assert handle.can_send is True
        assert handle.remaining == 9
        assert usage(session_factory, account_id) == 1

    def test_redelivered_job_adopts_open_reservation(
        self, quota, make_account, make_integration, make_transaction, session_factory
    ):
        account_id = make_account(sms_usage_count=0, sms_usage_limit=10)
        transaction_id = make_transaction(account_id, make_integration(account_id))

        first = quota.reserve(account_id, transaction_id=transaction_id)
        second = quota.reserve(account_id, transaction_id=transaction_id)

        assert second.can_send is True
        assert second.reservation_id == first.reservation_id
        assert usage(session_factory, account_id) == 1


class TestRelease:

    def test_commit_keeps_units(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id)

        assert handle.release(True, 1) is True

        assert usage(session_factory, account_id) == 1

    def test_failure_returns_units(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=4)
        handle = quota.reserve(account_id)

        handle.release(False)

        assert usage(session_factory, account_id) == 4

    def test_partial_commit_refunds_rest(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id, amount=3)

        handle.release(True, committed_amount=1)

        assert usage(session_factory, account_id) == 1

    def test_double_release_is_noop(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id)

        assert handle.release(False) is True
        assert handle.release(False) is False
        assert handle.release(True) is False

        assert usage(session_factory, account_id) == 0

    def test_resolve_twice_through_service_is_noop(self, quota, make_account, session_factory):
        """Two code paths settling the same reservation refund it once."""
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id)

        assert quota.resolve(handle.reservation_id, success=False) is True
        assert quota.resolve(handle.reservation_id, success=False) is False

        assert usage(session_factory, account_id) == 0

    def test_release_in_caller_session_waits_for_caller_commit(self, quota, make_account, session_factory):
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id)

        session = session_factory()
        try:
            assert handle.release(True, 1, session=session) is True
            session.rollback()
        finally:
            session.close()

        session = session_factory()
        try:
            reservation = session.get(QuotaReservation, handle.reservation_id)
            assert reservation.state == "reserved"
        finally:
            session.close()
        assert usage(session_factory, account_id) == 1

        # Rolled back with the caller: the reservation can still be settled
        assert quota.resolve(handle.reservation_id, success=True, committed_amount=1) is True
        assert usage(session_factory, account_id) == 1

    def test_release_clamps_at_zero(self, quota, make_account, session_factory, db):
        account_id = make_account(sms_usage_count=0)
        handle = quota.reserve(account_id)

        # Counter reset (billing cycle) while the send was in flight
        db.query(Account).filter(Account.id == account_id).update({Account.sms_usage_count: 0})
        db.commit()

        handle.release(False)

        assert usage(session_factory, account_id) == 0

    def test_denied_handle_release_is_noop(self, quota, make_account):
        account_id = make_account(sms_usage_limit=0)
        handle = quota.reserve(account_id)

        assert handle.release(True) is False


class TestExpireStale:

    def test_releases_old_reservations(self, quota, make_account, session_factory, db):
        account_id = make_account(sms_usage_count=0)
        stale = quota.reserve(account_id)
        fresh = quota.reserve(account_id)

        db.query(QuotaReservation).filter(QuotaReservation.id == stale.reservation_id).update(
            {QuotaReservation.created_at: datetime.utcnow() - timedelta(hours=2)}
        )
        db.commit()

        assert quota.expire_stale(older_than_minutes=60) == 1
        assert usage(session_factory, account_id) == 1

        # The late worker's commit is a no-op
        assert stale.release(True) is False
        assert fresh.release(True) is True
        assert usage(session_factory, account_id) == 1
