"""
Tests for scheduled maintenance jobs
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from app.config import settings
from app.models.pos_webhook_event import PosWebhookEvent
from app.scheduler import (
    run_claim_cleanup,
    run_dead_letter_check,
    run_stale_reservation_sweep,
    start_scheduler,
)
from app.services.send_queue import SendQueue


class TestDeadLetterCheck:

    def _fill_dead_letters(self, session_factory, transaction_id, count):
        session = session_factory()
        try:
            for i in range(count):
                SendQueue.add_dead_letter(session, f"job-{i}", {"transaction_id": transaction_id}, "Twilio 503", 3)
            session.commit()
        finally:
            session.close()

    def test_alerts_at_threshold(self, session_factory, make_account, make_integration, make_transaction, monkeypatch):
        account_id = make_account()
        transaction_id = make_transaction(account_id, make_integration(account_id))
        monkeypatch.setattr(settings, "dead_letter_alert_threshold", 2)
        self._fill_dead_letters(session_factory, transaction_id, 2)

        with patch("app.database.get_session_factory", return_value=session_factory), \
                patch("app.services.alert_notifier.AlertNotifier") as notifier:
            run_dead_letter_check()

        notifier.return_value.notify_dead_letter_growth.assert_called_once_with(2, 2)

    def test_quiet_below_threshold(self, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "dead_letter_alert_threshold", 10)

        with patch("app.database.get_session_factory", return_value=session_factory), \
                patch("app.services.alert_notifier.AlertNotifier") as notifier:
            run_dead_letter_check()

        notifier.assert_not_called()


class TestMaintenanceJobs:

    def test_claim_cleanup(self, session_factory, db):
        db.add(PosWebhookEvent(provider="square", event_id="old", claimed_at=datetime.utcnow() - timedelta(days=30)))
        db.commit()

        with patch("app.database.get_session_factory", return_value=session_factory):
            run_claim_cleanup()

        assert db.query(PosWebhookEvent).count() == 0

    def test_jobs_swallow_crashes(self):
        with patch("app.database.get_session_factory", side_effect=RuntimeError("no database")):
            run_claim_cleanup()
            run_stale_reservation_sweep()
            run_dead_letter_check()

    def test_jobs_skip_without_database(self):
        with patch("app.database.get_session_factory", return_value=None):
            run_claim_cleanup()
            run_stale_reservation_sweep()
            run_dead_letter_check()


def test_scheduler_not_started_in_testing():
    scheduler = start_scheduler("testing")

    assert scheduler.running is False
