"""
Transaction Ingestor
Turns a provider purchase into a PosTransaction row and, when eligible, a send job

Every purchase that reaches this module is recorded, skipped or not, so the
activity log explains every purchase that did not get a review request.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session

from app.models.account import Account
from app.models.pos_integration import PosIntegration
from app.models.pos_transaction import PosTransaction, DeliveryStatus, SkipReason
from app.services.eligibility import PurchaseCandidate, EligibilityVerdict, SKIP_MESSAGES, evaluate
from app.services.phone import mask_phone

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    """What happened to one purchase."""
    transaction_id: Optional[int]
    status: str
    created: bool
    job_id: Optional[str] = None
    reason: Optional[str] = None


class TransactionIngestor:
    """
    Records purchases and queues review requests.

    Args:
        session_factory: SQLAlchemy sessionmaker
        send_queue: SendQueue used for eligible purchases
        window_days: Recent contact dedup window
        delay_ms: Dispatch delay, None for the queue default
    """

    def __init__(self, session_factory: sessionmaker, send_queue, window_days: int = 30, delay_ms: Optional[int] = None):
        self.session_factory = session_factory
        self.send_queue = send_queue
        self.window_days = window_days
        self.delay_ms = delay_ms
        self.logger = logger.bind(service="ingestor")

    def ingest(self, integration_id: int, candidate: PurchaseCandidate, correlation_id: Optional[str] = None) -> IngestResult:
        """
        Evaluate eligibility, persist the verdict and queue the send.

        A purchase already recorded for this integration returns the existing
        row untouched.

        Args:
            integration_id: PosIntegration the purchase arrived through
            candidate: Purchase data
            correlation_id: Propagated into the send job

        Returns:
            IngestResult

        Raises:
            LookupError: Integration or account does not exist
        """
        session: Session = self.session_factory()
        try:
            integration = session.query(PosIntegration).filter(PosIntegration.id == integration_id).first()
            if integration is None:
                raise LookupError(f"POS integration {integration_id} not found")

            existing = self._find(session, integration_id, candidate.external_transaction_id)
            if existing is not None:
                self.logger.info(
                    "transaction_already_recorded",
                    transaction_id=existing.id,
                    external_transaction_id=candidate.external_transaction_id,
                    status=existing.sms_status
                )
                return IngestResult(existing.id, existing.sms_status, created=False)

            account = session.query(Account).filter(Account.id == integration.account_id).first()
            if account is None:
                raise LookupError(f"Account {integration.account_id} not found")

            verdict = evaluate(
                candidate,
                account,
                integration,
                lambda phone: self._contacted_recently(session, account.id, phone),
                window_days=self.window_days
            )

            transaction = self._new_row(integration, candidate, verdict.status, verdict.message, verdict.customer_phone)
            session.add(transaction)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent delivery of the same purchase won the insert
                session.rollback()
                existing = self._find(session, integration_id, candidate.external_transaction_id)
                self.logger.info(
                    "transaction_insert_raced",
                    external_transaction_id=candidate.external_transaction_id,
                    transaction_id=existing.id if existing else None
                )
                if existing is None:
                    raise
                return IngestResult(existing.id, existing.sms_status, created=False)

            transaction_id = transaction.id
            payload = self._job_payload(transaction_id, account, integration, candidate, verdict)
        finally:
            session.close()

        self.logger.info(
            "transaction_evaluated",
            transaction_id=transaction_id,
            account_id=payload["account_id"],
            eligible=verdict.eligible,
            reason=verdict.reason.value if verdict.reason else None,
            phone=mask_phone(verdict.customer_phone)
        )

        if not verdict.eligible:
            return IngestResult(transaction_id, verdict.status.value, created=True, reason=verdict.message)

        try:
            job_id = self.send_queue.enqueue(payload, delay_ms=self.delay_ms, correlation_id=correlation_id)
        except Exception as e:
            error = f"Failed to queue SMS: {e}"
            self.logger.error("transaction_enqueue_failed", transaction_id=transaction_id, error=str(e))
            self._fail_pending(transaction_id, error)
            return IngestResult(transaction_id, DeliveryStatus.failed.value, created=True, reason=error)

        return IngestResult(transaction_id, DeliveryStatus.pending.value, created=True, job_id=job_id)

    def record_skip(
        self,
        integration_id: int,
        candidate: PurchaseCandidate,
        reason: SkipReason,
        message: Optional[str] = None
    ) -> IngestResult:
        """
        Record a purchase rejected before eligibility could run
        (disabled location, no customer on the payment).
        """
        status = DeliveryStatus.skipped(reason)
        message = message or SKIP_MESSAGES[reason]

        session: Session = self.session_factory()
        try:
            integration = session.query(PosIntegration).filter(PosIntegration.id == integration_id).first()
            if integration is None:
                raise LookupError(f"POS integration {integration_id} not found")

            existing = self._find(session, integration_id, candidate.external_transaction_id)
            if existing is not None:
                return IngestResult(existing.id, existing.sms_status, created=False)

            transaction = self._new_row(integration, candidate, status, message, None)
            session.add(transaction)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._find(session, integration_id, candidate.external_transaction_id)
                if existing is None:
                    raise
                return IngestResult(existing.id, existing.sms_status, created=False)

            self.logger.info(
                "transaction_skipped",
                transaction_id=transaction.id,
                external_transaction_id=candidate.external_transaction_id,
                reason=reason.value
            )
            return IngestResult(transaction.id, status.value, created=True, reason=message)
        finally:
            session.close()

    def exists(self, integration_id: int, external_transaction_id: str) -> bool:
        session: Session = self.session_factory()
        try:
            return self._find(session, integration_id, external_transaction_id) is not None
        finally:
            session.close()

    def mark_refunded(self, integration_id: int, external_transaction_ids: list[str]) -> Optional[int]:
        """
        Cancel a pending review request because the purchase was refunded.

        Only pending transactions change; sent or skipped ones keep their status.

        Args:
            integration_id: Integration the refund arrived through
            external_transaction_ids: Candidate ids (payment id, order id)

        Returns:
            The cancelled transaction id, or None if nothing was pending
        """
        ids = [str(value) for value in external_transaction_ids if value]
        if not ids:
            return None

        session: Session = self.session_factory()
        try:
            transaction = session.query(PosTransaction).filter(
                PosTransaction.pos_integration_id == integration_id,
                PosTransaction.external_transaction_id.in_(ids)
            ).first()
            if transaction is None:
                self.logger.info("refund_without_transaction", external_transaction_ids=ids)
                return None

            updated = session.query(PosTransaction).filter(
                PosTransaction.id == transaction.id,
                PosTransaction.sms_status == DeliveryStatus.pending.value
            ).update({
                PosTransaction.sms_status: DeliveryStatus.skipped_refunded.value,
                PosTransaction.skip_reason: "Order was refunded",
            }, synchronize_session=False)
            session.commit()

            if updated:
                self.logger.info("pending_sms_cancelled_for_refund", transaction_id=transaction.id)
                return transaction.id

            self.logger.info("refund_after_settlement", transaction_id=transaction.id, status=transaction.sms_status)
            return None
        finally:
            session.close()

    # --- helpers ---

    @staticmethod
    def _find(session: Session, integration_id: int, external_transaction_id: str) -> Optional[PosTransaction]:
        return session.query(PosTransaction).filter(
            PosTransaction.pos_integration_id == integration_id,
            PosTransaction.external_transaction_id == external_transaction_id
        ).first()

    def _contacted_recently(self, session: Session, account_id: int, phone: str) -> bool:
        cutoff = datetime.utcnow() - timedelta(days=self.window_days)
        return session.query(PosTransaction.id).filter(
            PosTransaction.account_id == account_id,
            PosTransaction.customer_phone == phone,
            PosTransaction.sms_status.in_([DeliveryStatus.sent.value, DeliveryStatus.pending.value]),
            PosTransaction.created_at >= cutoff
        ).first() is not None

    @staticmethod
    def _new_row(
        integration: PosIntegration,
        candidate: PurchaseCandidate,
        status: DeliveryStatus,
        message: Optional[str],
        normalized_phone: Optional[str]
    ) -> PosTransaction:
        phone = normalized_phone or candidate.customer_phone
        return PosTransaction(
            account_id=integration.account_id,
            pos_integration_id=integration.id,
            external_transaction_id=candidate.external_transaction_id,
            customer_name=candidate.customer_name[:255] if candidate.customer_name else None,
            customer_phone=phone[:32] if phone else None,
            purchase_amount=candidate.purchase_amount,
            location_name=candidate.location_name,
            sms_status=status.value,
            skip_reason=message,
            created_at=datetime.utcnow()
        )

    @staticmethod
    def _job_payload(
        transaction_id: int,
        account: Account,
        integration: PosIntegration,
        candidate: PurchaseCandidate,
        verdict: EligibilityVerdict
    ) -> dict:
        return {
            "transaction_id": transaction_id,
            "account_id": account.id,
            "target_phone": verdict.target_phone,
            "customer_name": candidate.customer_name,
            "business_name": account.business_name,
            "review_link": account.review_url,
            "tone": account.sms_message_tone,
            "custom_message": account.custom_sms_message,
            "is_test_mode": bool(integration.test_mode),
        }

    def _fail_pending(self, transaction_id: int, error: str):
        session: Session = self.session_factory()
        try:
            session.query(PosTransaction).filter(
                PosTransaction.id == transaction_id,
                PosTransaction.sms_status == DeliveryStatus.pending.value
            ).update({
                PosTransaction.sms_status: DeliveryStatus.failed.value,
                PosTransaction.skip_reason: error[:2000],
            }, synchronize_session=False)
            session.commit()
        finally:
            session.close()
