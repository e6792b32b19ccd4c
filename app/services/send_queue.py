"""
Durable Send Queue
Delayed, retrying SMS job queue with a database-backed dead letter queue

Delivery, delay and retry with exponential backoff are dramatiq's (Redis in
production). This service adds what the broker does not keep: a send_jobs row
per message for queue statistics, and the dead_letter_jobs table holding jobs
that exhausted their retries until an operator requeues them.

One SendQueue is constructed at process start (FastAPI startup, worker
module) and handed to whatever needs to enqueue.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import sessionmaker, Session

from app.models.dead_letter_job import DeadLetterJob
from app.models.pos_transaction import PosTransaction, DeliveryStatus
from app.models.send_job import SendJob
from app.services.errors import DeadLetterJobNotFound

logger = structlog.get_logger(__name__)

JOB_STATUSES = ("queued", "active", "completed", "failed")


class SendQueue:
    """
    Enqueue, dead letter and requeue operations for SMS send jobs.

    Args:
        session_factory: SQLAlchemy sessionmaker
        actor: The dramatiq actor that consumes send jobs
        default_delay_ms: Delay applied when enqueue() is not given one
    """

    def __init__(self, session_factory: sessionmaker, actor, default_delay_ms: int = 30000):
        self.session_factory = session_factory
        self.actor = actor
        self.default_delay_ms = default_delay_ms
        self.logger = logger.bind(service="send_queue", queue=actor.queue_name)

    @property
    def broker(self):
        return self.actor.broker

    def enqueue(self, payload: dict, delay_ms: Optional[int] = None, correlation_id: Optional[str] = None) -> str:
        """
        Queue one send job.

        The send_jobs row is written before the broker sees the message, so a
        worker can never pick up a job the stats do not know about.

        Args:
            payload: Job payload; must contain transaction_id
            delay_ms: Visibility delay, default_delay_ms when None
            correlation_id: Carried into the worker's log context

        Returns:
            Job id (broker message id)

        Raises:
            Exception: Broker enqueue failed (the send_jobs row is marked failed first)
        """
        delay = self.default_delay_ms if delay_ms is None else delay_ms
        message = self.actor.message_with_options(
            kwargs={"payload": payload, "correlation_id": correlation_id}
        )

        session: Session = self.session_factory()
        try:
            session.add(self._job_row(message.message_id, payload))
            session.commit()
        finally:
            session.close()

        try:
            self.broker.enqueue(message, delay=delay or None)
        except Exception as e:
            self.logger.error("send_job_enqueue_failed", job_id=message.message_id, error=str(e))
            self._set_job_status(message.message_id, "failed", error=f"Enqueue failed: {e}")
            raise

        self.logger.info(
            "send_job_enqueued",
            job_id=message.message_id,
            transaction_id=payload.get("transaction_id"),
            delay_ms=delay
        )
        return message.message_id

    # --- Job bookkeeping (called by the dispatch worker) ---

    @staticmethod
    def _job_row(job_id: str, payload: dict) -> SendJob:
        return SendJob(
            job_id=job_id,
            transaction_id=payload["transaction_id"],
            status="queued",
            attempts=0,
            payload=payload,
            enqueued_at=datetime.utcnow()
        )

    @staticmethod
    def mark_job(session: Session, job_id: Optional[str], status: str, attempt: Optional[int] = None, error: Optional[str] = None):
        """
        Update a send_jobs row inside the caller's transaction.

        Unknown job ids are ignored (jobs queued by an older deploy, or direct
        actor sends in tests).
        """
        if not job_id:
            return
        job = session.query(SendJob).filter(SendJob.job_id == job_id).first()
        if job is None:
            return

        now = datetime.utcnow()
        job.status = status
        if attempt is not None:
            job.attempts = attempt
        if error is not None:
            job.last_error = error[:2000]
        if status == "active" and job.started_at is None:
            job.started_at = now
        if status in ("completed", "failed"):
            job.completed_at = now

    def _set_job_status(self, job_id: str, status: str, error: Optional[str] = None):
        session: Session = self.session_factory()
        try:
            self.mark_job(session, job_id, status, error=error)
            session.commit()
        finally:
            session.close()

    @staticmethod
    def add_dead_letter(
        session: Session,
        job_id: Optional[str],
        payload: dict,
        error: Exception | str,
        attempts_made: int,
        error_type: Optional[str] = None
    ) -> DeadLetterJob:
        """
        Move a job to the dead letter queue inside the caller's transaction.

        The caller commits this together with the transaction's failed status,
        so the DLQ entry and the status change land atomically.
        """
        if error_type is None:
            error_type = type(error).__name__ if isinstance(error, Exception) else "DeliveryError"
        entry = DeadLetterJob(
            original_job_id=job_id or "unknown",
            transaction_id=payload["transaction_id"],
            payload=payload,
            error_message=str(error)[:2000],
            error_type=error_type,
            attempts_made=attempts_made,
            failed_at=datetime.utcnow()
        )
        session.add(entry)
        SendQueue.mark_job(session, job_id, "failed", attempt=attempts_made, error=str(error))
        return entry

    # --- Dead letter operations ---

    def list_dead_letters(self, limit: int = 50) -> list[DeadLetterJob]:
        session: Session = self.session_factory()
        try:
            return session.query(DeadLetterJob).order_by(DeadLetterJob.failed_at.desc()).limit(limit).all()
        finally:
            session.close()

    def requeue_dead_letter(self, dead_letter_id: int, correlation_id: Optional[str] = None) -> str:
        """
        Move one job from the dead letter queue back onto the main queue.

        The transaction goes back from failed to pending (otherwise the worker
        would no-op), the original payload is queued with no delay and the DLQ
        entry is removed. If the broker refuses the message, all three are
        put back.

        Args:
            dead_letter_id: dead_letter_jobs.id

        Returns:
            The new job id

        Raises:
            DeadLetterJobNotFound: No such dead letter entry
        """
        session: Session = self.session_factory()
        try:
            entry = session.query(DeadLetterJob).filter(DeadLetterJob.id == dead_letter_id).first()
            if entry is None:
                raise DeadLetterJobNotFound(f"Dead letter job {dead_letter_id} not found")

            payload = dict(entry.payload)
            message = self.actor.message_with_options(
                kwargs={"payload": payload, "correlation_id": correlation_id}
            )
            snapshot = {
                "original_job_id": entry.original_job_id,
                "transaction_id": entry.transaction_id,
                "payload": payload,
                "error_message": entry.error_message,
                "error_type": entry.error_type,
                "attempts_made": entry.attempts_made,
                "failed_at": entry.failed_at,
            }

            reset = session.query(PosTransaction).filter(
                PosTransaction.id == entry.transaction_id,
                PosTransaction.sms_status == DeliveryStatus.failed.value
            ).update({
                PosTransaction.sms_status: DeliveryStatus.pending.value,
                PosTransaction.skip_reason: None,
            }, synchronize_session=False)

            session.delete(entry)
            session.add(self._job_row(message.message_id, payload))
            session.commit()
        finally:
            session.close()

        try:
            self.broker.enqueue(message)
        except Exception as e:
            self.logger.error("dead_letter_requeue_failed", dead_letter_id=dead_letter_id, error=str(e))
            self._restore_dead_letter(snapshot, message.message_id, reset > 0, e)
            raise

        self.logger.info(
            "dead_letter_requeued",
            dead_letter_id=dead_letter_id,
            original_job_id=snapshot["original_job_id"],
            job_id=message.message_id,
            transaction_id=snapshot["transaction_id"],
            transaction_reset=reset > 0
        )
        return message.message_id

    def _restore_dead_letter(self, snapshot: dict, job_id: str, transaction_was_reset: bool, error: Exception):
        session: Session = self.session_factory()
        try:
            session.add(DeadLetterJob(**snapshot))
            if transaction_was_reset:
                session.query(PosTransaction).filter(
                    PosTransaction.id == snapshot["transaction_id"],
                    PosTransaction.sms_status == DeliveryStatus.pending.value
                ).update({
                    PosTransaction.sms_status: DeliveryStatus.failed.value,
                    PosTransaction.skip_reason: snapshot["error_message"],
                }, synchronize_session=False)
            self.mark_job(session, job_id, "failed", error=f"Requeue failed: {error}")
            session.commit()
        finally:
            session.close()

    # --- Statistics ---

    def get_stats(self) -> dict:
        """
        Queue counts.

        Returns:
            {"main": {"waiting", "active", "completed", "failed"},
             "dead_letter": {"waiting"}}
        """
        session: Session = self.session_factory()
        try:
            rows = session.query(SendJob.status, func.count(SendJob.id)).group_by(SendJob.status).all()
            by_status = {status: 0 for status in JOB_STATUSES}
            for status, count in rows:
                by_status[status] = count

            dead_letter_waiting = session.query(func.count(DeadLetterJob.id)).scalar() or 0

            return {
                "main": {
                    "waiting": by_status["queued"],
                    "active": by_status["active"],
                    "completed": by_status["completed"],
                    "failed": by_status["failed"],
                },
                "dead_letter": {
                    "waiting": dead_letter_waiting,
                },
            }
        finally:
            session.close()
