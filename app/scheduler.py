"""
APScheduler Background Jobs

Scheduled maintenance for the webhook pipeline:
- daily cleanup of old idempotency claims
- sweep of quota reservations left open by dead workers
- dead letter queue growth alert

Jobs run via BackgroundScheduler in the FastAPI process.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger

from app.config import settings

logger = structlog.get_logger(__name__)


def run_claim_cleanup():
    """
    Delete webhook claims older than the retention window.

    Called by APScheduler daily at 03:00.
    """
    try:
        from app.database import get_session_factory
        from app.services.idempotency import IdempotencyLedger

        session_factory = get_session_factory()
        if session_factory is None:
            logger.warning("claim_cleanup_skipped", reason="database_not_configured")
            return

        deleted = IdempotencyLedger(session_factory).cleanup(settings.webhook_event_retention_days)
        logger.info("claim_cleanup_completed", deleted_count=deleted)

    except Exception as e:
        logger.error("claim_cleanup_crashed", error=str(e), exc_info=True)


def run_stale_reservation_sweep():
    """
    Release quota reservations older than the reservation timeout.

    Called by APScheduler every 15 minutes.
    """
    try:
        from app.database import get_session_factory
        from app.services.quota import QuotaService

        session_factory = get_session_factory()
        if session_factory is None:
            logger.warning("reservation_sweep_skipped", reason="database_not_configured")
            return

        released = QuotaService(session_factory).expire_stale(settings.reservation_timeout_minutes)
        logger.info("reservation_sweep_completed", released=released)

    except Exception as e:
        logger.error("reservation_sweep_crashed", error=str(e), exc_info=True)


def run_dead_letter_check():
    """
    Alert the admin when the dead letter queue reaches the threshold.

    Called by APScheduler every 30 minutes.
    """
    try:
        from sqlalchemy import func
        from app.database import get_session_factory
        from app.models.dead_letter_job import DeadLetterJob
        from app.services.alert_notifier import AlertNotifier

        session_factory = get_session_factory()
        if session_factory is None:
            logger.warning("dead_letter_check_skipped", reason="database_not_configured")
            return

        session = session_factory()
        try:
            waiting = session.query(func.count(DeadLetterJob.id)).scalar() or 0
        finally:
            session.close()

        threshold = settings.dead_letter_alert_threshold
        logger.info("dead_letter_check_completed", waiting=waiting, threshold=threshold)
        if threshold and waiting >= threshold:
            AlertNotifier().notify_dead_letter_growth(waiting, threshold)

    except Exception as e:
        logger.error("dead_letter_check_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    # Job 1: Daily webhook claim cleanup (at 03:00)
    scheduler.add_job(
        run_claim_cleanup,
        trigger=CronTrigger(hour=3, minute=0),
        id="webhook_claim_cleanup",
        name="Webhook Claim Daily Cleanup",
        replace_existing=True
    )
    logger.info("job_registered", job="webhook_claim_cleanup", schedule="daily_03:00")

    # Job 2: Stale quota reservation sweep
    scheduler.add_job(
        run_stale_reservation_sweep,
        trigger=IntervalTrigger(minutes=15),
        id="stale_reservation_sweep",
        name="Stale Quota Reservation Sweep",
        replace_existing=True
    )
    logger.info("job_registered", job="stale_reservation_sweep", schedule="every_15m")

    # Job 3: Dead letter queue growth alert
    scheduler.add_job(
        run_dead_letter_check,
        trigger=IntervalTrigger(minutes=30),
        id="dead_letter_check",
        name="Dead Letter Queue Growth Check",
        replace_existing=True
    )
    logger.info("job_registered", job="dead_letter_check", schedule="every_30m")

    scheduler.start()
    logger.info("scheduler_started", jobs=["webhook_claim_cleanup", "stale_reservation_sweep", "dead_letter_check"])

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_claim_cleanup",
    "run_stale_reservation_sweep",
    "run_dead_letter_check"
]
