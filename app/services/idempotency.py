"""
Idempotency Ledger
Claims provider webhook events so each one is handled at most once
"""

from typing import Any, Callable, Optional, Tuple
from datetime import datetime, timedelta
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from app.models.pos_webhook_event import PosWebhookEvent
from app.services.errors import IdempotencyStoreUnavailable

logger = structlog.get_logger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class IdempotencyLedger:
    """
    Database-backed claim ledger over pos_webhook_events.

    A claim is an INSERT ... ON CONFLICT DO NOTHING against the unique
    (provider, event_id) key. No locks are taken; the constraint decides
    the winner between concurrent deliveries.

    The ledger fails closed: if the store cannot be reached, claim() raises
    IdempotencyStoreUnavailable instead of letting the event through.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Initialize idempotency ledger.

        Args:
            session_factory: SQLAlchemy sessionmaker (not session - creates independent transactions)
        """
        self.session_factory = session_factory
        self.logger = logger.bind(service="idempotency")

    def claim(self, provider: str, event_id: str, event_type: Optional[str] = None) -> bool:
        """
        Atomically take ownership of an event.

        Args:
            provider: "square" or "shopify"
            event_id: Provider event identifier
            event_type: Stored for support lookups only

        Returns:
            True if this call created the claim, False if it already existed

        Raises:
            IdempotencyStoreUnavailable: The claim could not be recorded
        """
        session: Session = self.session_factory()
        try:
            insert = _INSERTS.get(session.get_bind().dialect.name, pg_insert)
            stmt = insert(PosWebhookEvent).values(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                claimed_at=datetime.utcnow()
            ).on_conflict_do_nothing(index_elements=['provider', 'event_id'])

            result_proxy = session.execute(stmt)
            session.commit()

            # rowcount = 0 means the row already existed
            claimed = result_proxy.rowcount > 0

            if claimed:
                self.logger.info("webhook_event_claimed", provider=provider, event_id=event_id, event_type=event_type)
            else:
                self.logger.info("webhook_event_already_claimed", provider=provider, event_id=event_id)

            return claimed

        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("webhook_event_claim_failed", provider=provider, event_id=event_id, error=str(e))
            raise IdempotencyStoreUnavailable(str(e)) from e
        finally:
            session.close()

    def release(self, provider: str, event_id: str) -> bool:
        """
        Delete a claim so the provider's next delivery is processed.

        Only called when handling failed.

        Returns:
            True if a claim was deleted
        """
        session: Session = self.session_factory()
        try:
            deleted = session.query(PosWebhookEvent).filter(
                PosWebhookEvent.provider == provider,
                PosWebhookEvent.event_id == event_id
            ).delete(synchronize_session=False)
            session.commit()

            self.logger.info("webhook_event_claim_released", provider=provider, event_id=event_id, deleted=deleted)
            return deleted > 0

        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("webhook_event_release_failed", provider=provider, event_id=event_id, error=str(e))
            raise IdempotencyStoreUnavailable(str(e)) from e
        finally:
            session.close()

    def run_claimed(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str],
        handler: Callable[[], Any]
    ) -> Tuple[bool, Any]:
        """
        Claim an event and run its handler.

        If the handler raises, the claim is released before the exception
        propagates, so a failed event never stays claimed.

        Returns:
            (claimed, handler_result). (False, None) for a duplicate delivery.
        """
        if not self.claim(provider, event_id, event_type):
            return False, None

        try:
            result = handler()
        except Exception:
            try:
                self.release(provider, event_id)
            except IdempotencyStoreUnavailable:
                # Claim stays behind; the handler error is still the one reported
                self.logger.error("webhook_event_claim_orphaned", provider=provider, event_id=event_id)
            raise

        return True, result

    def cleanup(self, retention_days: int) -> int:
        """
        Delete claims older than the retention window.

        Called by the scheduler to prevent unbounded table growth.

        Returns:
            Number of claims deleted
        """
        session: Session = self.session_factory()
        try:
            cutoff = datetime.utcnow() - timedelta(days=retention_days)

            deleted_count = session.query(PosWebhookEvent).filter(
                PosWebhookEvent.claimed_at < cutoff
            ).delete(synchronize_session=False)

            session.commit()

            self.logger.info("webhook_event_cleanup_complete", deleted_count=deleted_count, retention_days=retention_days)
            return deleted_count

        except SQLAlchemyError as e:
            self.logger.error("webhook_event_cleanup_failed", error=str(e))
            session.rollback()
            return 0
        finally:
            session.close()
