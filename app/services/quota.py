"""
Quota Reservation Service
Reserve / commit / release of per-account SMS allowance under a row lock

All quota mutation for an account goes through this module. reserve() locks
the account row (SELECT ... FOR UPDATE), checks the remaining allowance and
increments sms_usage_count in the same transaction, so two concurrent callers
can never both take the last unit. The send itself happens after the lock is
released; its outcome is settled through ReservationHandle.release().
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from app.models.account import Account
from app.models.quota_reservation import QuotaReservation

logger = structlog.get_logger(__name__)


class DenialReason(str, Enum):
    limit_reached = "limit_reached"
    payment_past_due = "payment_past_due"
    account_not_found = "account_not_found"


class ReservationHandle:
    """
    Outcome of QuotaService.reserve().

    When can_send is True the units are already counted against the account.
    The holder must call release() exactly once: release(True) keeps them,
    release(False) gives them back. Further calls are logged no-ops.
    """

    def __init__(
        self,
        service: "QuotaService",
        account_id: int,
        can_send: bool,
        remaining: int,
        reason: Optional[DenialReason] = None,
        reservation_id: Optional[int] = None,
        amount: int = 1
    ):
        self._service = service
        self.account_id = account_id
        self.can_send = can_send
        self.remaining = remaining
        self.reason = reason
        self.reservation_id = reservation_id
        self.amount = amount
        self._resolved = False

    @property
    def resolved(self) -> bool:
        return self._resolved

    def release(self, success: bool, committed_amount: Optional[int] = None, session: Optional[Session] = None) -> bool:
        """
        Settle the reservation.

        Args:
            success: True if the send went out (commit), False to give the units back
            committed_amount: Units actually used when fewer than reserved; defaults to all
            session: Settle inside the caller's transaction, so the quota commit
                lands together with the caller's own writes

        Returns:
            True if this call changed the reservation, False for a no-op
        """
        if not self.can_send or self.reservation_id is None:
            return False

        if self._resolved:
            logger.warning(
                "quota_release_repeated",
                account_id=self.account_id,
                reservation_id=self.reservation_id,
                success=success
            )
            return False

        changed = self._service.resolve(self.reservation_id, success, committed_amount, session=session)
        self._resolved = True
        return changed

    def __repr__(self):
        return (
            f"<ReservationHandle(account_id={self.account_id}, can_send={self.can_send}, "
            f"remaining={self.remaining}, reason={self.reason}, reservation_id={self.reservation_id})>"
        )


class QuotaService:
    """
    Per-account SMS quota with eager increment and compensating release.

    Every reservation is also recorded as a quota_reservations row. The row's
    state change (reserved -> committed | released) is a conditional UPDATE, so
    a reservation can be settled only once even if two code paths race to
    settle it.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker (each call runs its own transaction)
        """
        self.session_factory = session_factory
        self.logger = logger.bind(service="quota")

    def reserve(self, account_id: int, amount: int = 1, transaction_id: Optional[int] = None) -> ReservationHandle:
        """
        Reserve SMS units for an account.

        A transaction that already holds an open reservation (its job was
        redelivered after a worker stalled) gets that reservation back instead
        of taking a second one.

        Args:
            account_id: Account to charge
            amount: Units to reserve
            transaction_id: PosTransaction the units are for

        Returns:
            ReservationHandle with can_send, remaining and a denial reason

        Raises:
            SQLAlchemyError: The account row could not be read or updated
        """
        session: Session = self.session_factory()
        try:
            account = session.query(Account).filter(
                Account.id == account_id
            ).with_for_update().first()

            if account is None:
                session.rollback()
                self.logger.warning("quota_account_not_found", account_id=account_id)
                return ReservationHandle(self, account_id, False, 0, DenialReason.account_not_found)

            # Corrupted counters are treated as zero usage
            used = max(account.sms_usage_count or 0, 0)
            limit = account.sms_usage_limit or 0

            if transaction_id is not None:
                open_reservation = session.query(QuotaReservation).filter(
                    QuotaReservation.transaction_id == transaction_id,
                    QuotaReservation.state == "reserved"
                ).first()
                if open_reservation is not None:
                    reservation_id = open_reservation.id
                    open_amount = open_reservation.amount
                    session.rollback()
                    self.logger.info(
                        "quota_reservation_adopted",
                        account_id=account_id,
                        transaction_id=transaction_id,
                        reservation_id=reservation_id
                    )
                    return ReservationHandle(
                        self, account_id, True, max(limit - used, 0),
                        reservation_id=reservation_id, amount=open_amount
                    )

            remaining = limit - used

            if account.subscription_status == "past_due":
                session.rollback()
                self.logger.info("quota_denied", account_id=account_id, reason="payment_past_due")
                return ReservationHandle(self, account_id, False, max(remaining, 0), DenialReason.payment_past_due)

            if remaining < amount:
                session.rollback()
                self.logger.info(
                    "quota_denied",
                    account_id=account_id,
                    reason="limit_reached",
                    used=used,
                    limit=limit
                )
                return ReservationHandle(self, account_id, False, max(remaining, 0), DenialReason.limit_reached)

            account.sms_usage_count = used + amount
            reservation = QuotaReservation(
                account_id=account_id,
                transaction_id=transaction_id,
                amount=amount,
                state="reserved",
                created_at=datetime.utcnow()
            )
            session.add(reservation)
            session.flush()
            reservation_id = reservation.id
            session.commit()

            self.logger.info(
                "quota_reserved",
                account_id=account_id,
                transaction_id=transaction_id,
                reservation_id=reservation_id,
                amount=amount,
                remaining=remaining - amount
            )
            return ReservationHandle(
                self, account_id, True, remaining - amount,
                reservation_id=reservation_id, amount=amount
            )

        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("quota_reserve_failed", account_id=account_id, error=str(e))
            raise
        finally:
            session.close()

    def resolve(
        self,
        reservation_id: int,
        success: bool,
        committed_amount: Optional[int] = None,
        session: Optional[Session] = None
    ) -> bool:
        """
        Commit or release a reservation.

        Release returns the units to the account (clamped at zero). Commit
        keeps them, returning only the part beyond committed_amount.

        Args:
            session: Run inside the caller's transaction; the caller commits.
                Without one the change is committed here.

        Returns:
            True if the reservation was open and is now settled, False if it
            was already settled or does not exist
        """
        if session is not None:
            return self._resolve_in(session, reservation_id, success, committed_amount)

        own_session: Session = self.session_factory()
        try:
            changed = self._resolve_in(own_session, reservation_id, success, committed_amount)
            if changed:
                own_session.commit()
            else:
                own_session.rollback()
            return changed
        except SQLAlchemyError as e:
            own_session.rollback()
            self.logger.error("quota_resolve_failed", reservation_id=reservation_id, error=str(e))
            raise
        finally:
            own_session.close()

    def _resolve_in(self, session: Session, reservation_id: int, success: bool, committed_amount: Optional[int]) -> bool:
        reservation = session.query(QuotaReservation).filter(
            QuotaReservation.id == reservation_id
        ).first()

        if reservation is None:
            self.logger.warning("quota_reservation_not_found", reservation_id=reservation_id)
            return False

        account_id = reservation.account_id
        amount = reservation.amount

        # Same lock order as reserve(): account row first
        account = session.query(Account).filter(
            Account.id == account_id
        ).with_for_update().first()

        if success:
            committed = amount if committed_amount is None else max(0, min(committed_amount, amount))
            new_state = "committed"
        else:
            committed = 0
            new_state = "released"
        refund = amount - committed

        updated = session.query(QuotaReservation).filter(
            QuotaReservation.id == reservation_id,
            QuotaReservation.state == "reserved"
        ).update({
            QuotaReservation.state: new_state,
            QuotaReservation.committed_amount: committed,
            QuotaReservation.resolved_at: datetime.utcnow(),
        }, synchronize_session=False)

        if updated == 0:
            self.logger.warning(
                "quota_reservation_already_resolved",
                reservation_id=reservation_id,
                attempted=new_state
            )
            return False

        if refund and account is not None:
            account.sms_usage_count = max((account.sms_usage_count or 0) - refund, 0)

        self.logger.info(
            "quota_reservation_resolved",
            account_id=account_id,
            reservation_id=reservation_id,
            state=new_state,
            committed=committed,
            refunded=refund
        )
        return True

    def expire_stale(self, older_than_minutes: int) -> int:
        """
        Release reservations left open longer than the timeout.

        Covers workers that died between reserve() and release() and whose
        job was never redelivered.

        Returns:
            Number of reservations released
        """
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)

        session: Session = self.session_factory()
        try:
            stale_ids = [
                row.id for row in session.query(QuotaReservation.id).filter(
                    QuotaReservation.state == "reserved",
                    QuotaReservation.created_at < cutoff
                ).all()
            ]
        finally:
            session.close()

        released = 0
        for reservation_id in stale_ids:
            if self.resolve(reservation_id, success=False):
                released += 1

        if stale_ids:
            self.logger.warning("quota_stale_reservations_released", count=released, older_than_minutes=older_than_minutes)
        return released
