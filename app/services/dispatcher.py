"""
SMS Dispatch Service
Sends one queued review request: reserve quota, render, send, settle

State machine of the transaction handled here:
- pending -> sent                   (provider accepted the message)
- pending -> skipped_limit_reached  (quota reservation denied, no retry)
- pending -> failed                 (provider rejected the message, or the
                                     final retry attempt failed)
Any other status means the transaction was settled elsewhere (refund,
earlier delivery of the same job) and the job is acknowledged untouched.

The reservation is settled after the provider call returns. A successful
send commits it in the same DB transaction that marks the transaction sent;
if that write fails the reservation stays open and the retry adopts it.

Jobs that exhaust their retries for any reason end in dead_letter(), called
inline for provider failures and from the send actor's retries-exhausted
callback for everything else.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import sessionmaker, Session

from app.models.dead_letter_job import DeadLetterJob
from app.models.pos_transaction import PosTransaction, DeliveryStatus
from app.services.errors import PermanentDispatchError, TransientDeliveryError
from app.services.message_renderer import MessageRenderer, MessageTone
from app.services.phone import mask_phone
from app.services.quota import QuotaService, DenialReason, ReservationHandle
from app.services.send_queue import SendQueue
from app.services.sms_client import SmsClient, SendResult

logger = structlog.get_logger(__name__)

DENIAL_MESSAGES = {
    DenialReason.limit_reached: "SMS limit reached",
    DenialReason.payment_past_due: "Subscription payment past due",
    DenialReason.account_not_found: "Account not found",
}

REQUIRED_PAYLOAD_FIELDS = ("transaction_id", "account_id", "target_phone", "business_name", "review_link")


class SmsDispatcher:
    """
    Processes one send job.

    Outcomes returned: "sent", "skipped" (quota denied), "failed" (permanent
    provider rejection), "noop" (transaction no longer pending). Transient
    failures raise TransientDeliveryError for the broker's retry policy;
    on the last attempt the job is dead-lettered first.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        quota: QuotaService,
        sms_client: SmsClient,
        renderer: Optional[MessageRenderer] = None
    ):
        self.session_factory = session_factory
        self.quota = quota
        self.sms_client = sms_client
        self.renderer = renderer or MessageRenderer()

    def dispatch(self, payload: dict, job_id: Optional[str] = None, attempt: int = 1, max_attempts: int = 3) -> str:
        """
        Run one delivery attempt.

        Args:
            payload: Job payload written by the ingestor
            job_id: Broker message id
            attempt: 1-based attempt number
            max_attempts: Total attempts the broker will make

        Returns:
            "sent", "skipped", "failed" or "noop"

        Raises:
            PermanentDispatchError: Payload or transaction is unusable
            TransientDeliveryError: Send failed and may succeed on retry
        """
        missing = [field for field in REQUIRED_PAYLOAD_FIELDS if not payload.get(field)]
        if missing:
            error = PermanentDispatchError(f"Send job payload missing {', '.join(missing)}")
            # Never retried: fail the transaction now rather than leave it pending
            self.dead_letter(payload, job_id, attempt, error)
            raise error

        transaction_id = payload["transaction_id"]
        log = logger.bind(transaction_id=transaction_id, job_id=job_id, attempt=attempt)

        # Step 1: post-hoc cancellation check
        session: Session = self.session_factory()
        try:
            transaction = session.query(PosTransaction).filter(PosTransaction.id == transaction_id).first()
            if transaction is None:
                SendQueue.mark_job(session, job_id, "failed", attempt=attempt, error="Transaction not found")
                session.commit()
                raise PermanentDispatchError(f"Transaction {transaction_id} not found")

            if transaction.sms_status != DeliveryStatus.pending.value:
                SendQueue.mark_job(session, job_id, "completed", attempt=attempt)
                session.commit()
                log.info("sms_dispatch_noop", status=transaction.sms_status)
                return "noop"

            account_id = transaction.account_id
            SendQueue.mark_job(session, job_id, "active", attempt=attempt)
            session.commit()
        finally:
            session.close()

        # Step 2: reserve quota (authoritative limit check)
        reservation = self.quota.reserve(account_id, transaction_id=transaction_id)
        if not reservation.can_send:
            reason = DENIAL_MESSAGES.get(reservation.reason, "SMS limit reached")
            self._settle(
                transaction_id,
                DeliveryStatus.skipped_limit_reached,
                job_id=job_id,
                job_status="completed",
                attempt=attempt,
                skip_reason=reason
            )
            log.info("sms_dispatch_quota_denied", account_id=account_id, reason=reservation.reason.value)
            return "skipped"

        # Step 3: render and send, outside any lock
        try:
            body = self.renderer.render(
                MessageTone.parse(payload.get("tone"), payload.get("custom_message")),
                customer_name=payload.get("customer_name"),
                business_name=payload["business_name"],
                review_link=payload["review_link"]
            )
            result = self.sms_client.send(payload["target_phone"], body)
        except Exception as e:
            log.error("sms_dispatch_crashed", error=str(e), exc_info=True)
            reservation.release(False)
            self._handle_transient(payload, job_id, attempt, max_attempts, str(e), log)
            raise

        # Step 4: settle
        if result.success:
            # Quota commit and the sent status land in one DB transaction, so a
            # retry after a failed write re-adopts the still open reservation
            settled = self._settle(
                transaction_id,
                DeliveryStatus.sent,
                job_id=job_id,
                job_status="completed",
                attempt=attempt,
                provider_message_id=result.provider_message_id,
                reservation=reservation
            )
            if not settled:
                log.warning("sms_sent_after_status_change", provider_message_id=result.provider_message_id)
            log.info(
                "sms_dispatch_sent",
                to=mask_phone(payload["target_phone"]),
                provider_message_id=result.provider_message_id,
                test_mode=payload.get("is_test_mode", False)
            )
            return "sent"

        reservation.release(False)

        if not result.retryable:
            self._settle(
                transaction_id,
                DeliveryStatus.failed,
                job_id=job_id,
                job_status="failed",
                attempt=attempt,
                skip_reason=result.error
            )
            log.error("sms_dispatch_rejected", error=result.error, code=result.code)
            return "failed"

        self._handle_transient(payload, job_id, attempt, max_attempts, result.error, log, result)
        raise TransientDeliveryError(result.error or "SMS send failed", code=result.code)

    def _handle_transient(
        self,
        payload: dict,
        job_id: Optional[str],
        attempt: int,
        max_attempts: int,
        error: Optional[str],
        log,
        result: Optional[SendResult] = None
    ):
        """Record a retryable failure; on the last attempt fail the transaction and dead-letter the job."""
        error = error or "SMS send failed"
        if attempt >= max_attempts:
            self.dead_letter(payload, job_id, attempt, TransientDeliveryError(error, code=result.code if result else None))
            return

        session: Session = self.session_factory()
        try:
            SendQueue.mark_job(session, job_id, "active", attempt=attempt, error=error)
            session.commit()
            log.warning("sms_dispatch_retrying", error=error, attempts_left=max_attempts - attempt)
        finally:
            session.close()

    def dead_letter(
        self,
        payload: dict,
        job_id: Optional[str],
        attempts_made: int,
        error: Exception | str,
        error_type: Optional[str] = None
    ) -> bool:
        """
        Fail the transaction and move its job to the dead letter queue.

        Both writes share one DB transaction. Runs inline on the last
        attempt of a provider failure and again from the retries-exhausted
        callback for every other error, so a job that already has an entry
        is left alone. A transaction that is gone or no longer pending has
        nothing to replay: its send job is only marked failed.

        Args:
            error_type: Name recorded for the failure when error is only a message

        Returns:
            True if a dead letter entry was written
        """
        if error_type is None:
            error_type = type(error).__name__ if isinstance(error, Exception) else "DeliveryError"
        transaction_id = payload.get("transaction_id")
        log = logger.bind(transaction_id=transaction_id, job_id=job_id)

        session: Session = self.session_factory()
        try:
            if job_id and session.query(DeadLetterJob.id).filter(DeadLetterJob.original_job_id == job_id).first():
                session.rollback()
                log.info("sms_job_already_dead_lettered")
                return False

            transaction = None
            if transaction_id:
                transaction = session.query(PosTransaction).filter(
                    PosTransaction.id == transaction_id
                ).with_for_update().first()

            if transaction is None or transaction.sms_status != DeliveryStatus.pending.value:
                SendQueue.mark_job(session, job_id, "failed", attempt=attempts_made, error=str(error))
                session.commit()
                log.error(
                    "sms_job_failed_without_replay",
                    status=transaction.sms_status if transaction else None,
                    error=str(error),
                    error_type=error_type
                )
                return False

            transaction.sms_status = DeliveryStatus.failed.value
            transaction.skip_reason = str(error)[:2000]
            SendQueue.add_dead_letter(session, job_id, payload, error, attempts_made=attempts_made, error_type=error_type)
            session.commit()
            log.error("sms_job_dead_lettered", error=str(error), error_type=error_type, attempts_made=attempts_made)
            return True
        finally:
            session.close()

    def _settle(
        self,
        transaction_id: int,
        status: DeliveryStatus,
        job_id: Optional[str],
        job_status: str,
        attempt: int,
        skip_reason: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        reservation: Optional[ReservationHandle] = None
    ) -> bool:
        """
        Move a pending transaction to its final status.

        A reservation passed in is committed in the same DB transaction.

        Returns:
            False if the transaction had already left pending
        """
        values = {PosTransaction.sms_status: status.value}
        if skip_reason is not None:
            values[PosTransaction.skip_reason] = skip_reason[:2000]
        if status is DeliveryStatus.sent:
            values[PosTransaction.sms_sent_at] = datetime.utcnow()
            values[PosTransaction.provider_message_id] = provider_message_id

        session: Session = self.session_factory()
        try:
            if reservation is not None:
                reservation.release(True, 1, session=session)
            updated = session.query(PosTransaction).filter(
                PosTransaction.id == transaction_id,
                PosTransaction.sms_status == DeliveryStatus.pending.value
            ).update(values, synchronize_session=False)
            SendQueue.mark_job(session, job_id, job_status, attempt=attempt)
            session.commit()
            return updated > 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
