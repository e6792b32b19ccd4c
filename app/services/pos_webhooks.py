"""
Provider Webhook Base
Shared claim-then-route flow and integration/location lookups for POS webhooks
"""

import base64
import hashlib
import hmac
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import sessionmaker, Session

from app.models.pos_integration import PosIntegration
from app.models.pos_location import PosLocation
from app.services.idempotency import IdempotencyLedger
from app.services.pos_transactions import TransactionIngestor

logger = structlog.get_logger(__name__)


def hmac_sha256_base64(key: str, message: bytes) -> str:
    """Base64 encoded HMAC-SHA256 digest."""
    digest = hmac.new(key.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def signatures_match(expected: str, received: Optional[str]) -> bool:
    """Constant-time comparison; a missing header never matches."""
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


class ProviderWebhookService:
    """
    Base for provider webhook services.

    Subclasses set `provider` and implement `handlers()`, mapping event types
    to callables that take (event, correlation_id) and return a result dict.
    process_event() claims the event in the idempotency ledger before running
    the handler; the claim is released if the handler raises.
    """

    provider: str = ""

    def __init__(self, session_factory: sessionmaker, ledger: IdempotencyLedger, ingestor: TransactionIngestor):
        self.session_factory = session_factory
        self.ledger = ledger
        self.ingestor = ingestor
        self.logger = logger.bind(provider=self.provider)

    def handlers(self) -> dict[str, Callable]:
        raise NotImplementedError

    def process_event(self, event_id: str, event_type: str, event, correlation_id: Optional[str] = None) -> dict:
        """
        Claim and handle one webhook event.

        Returns:
            {"status": "processed" | "duplicate" | "ignored", ...handler result}

        Raises:
            IdempotencyStoreUnavailable: Claim ledger unreachable (fail closed)
            Exception: Whatever the handler raised, after the claim was released
        """
        handler = self.handlers().get(event_type)
        if handler is None:
            self.logger.info("webhook_event_ignored", event_type=event_type, event_id=event_id)
            return {"status": "ignored", "action": "unhandled_event_type", "event_type": event_type}

        claimed, result = self.ledger.run_claimed(
            self.provider,
            event_id,
            event_type,
            lambda: handler(event, correlation_id)
        )
        if not claimed:
            self.logger.info("webhook_event_duplicate", event_type=event_type, event_id=event_id)
            return {"status": "duplicate", "action": "already_processed", "event_type": event_type}

        self.logger.info("webhook_event_processed", event_type=event_type, event_id=event_id, **result)
        return {"status": "processed", "event_type": event_type, **result}

    # --- lookups ---

    def find_integration(self, session: Session, active_only: bool = True, **identity) -> Optional[PosIntegration]:
        query = session.query(PosIntegration).filter(PosIntegration.provider == self.provider)
        for column, value in identity.items():
            query = query.filter(getattr(PosIntegration, column) == value)
        if active_only:
            query = query.filter(PosIntegration.is_active.is_(True))
        return query.first()

    @staticmethod
    def find_location(session: Session, integration_id: int, external_location_id: Optional[str]) -> Optional[PosLocation]:
        if not external_location_id:
            return None
        return session.query(PosLocation).filter(
            PosLocation.pos_integration_id == integration_id,
            PosLocation.external_location_id == str(external_location_id)
        ).first()

    def deactivate_integration(self, **identity) -> dict:
        """Deactivate an integration and drop its token (revoked or uninstalled)."""
        session: Session = self.session_factory()
        try:
            integration = self.find_integration(session, active_only=False, **identity)
            if integration is None:
                return {"action": "skipped", "reason": "no_integration"}

            integration.is_active = False
            integration.access_token = None
            session.commit()
            self.logger.info("pos_integration_deactivated", integration_id=integration.id)
            return {"action": "integration_deactivated", "integration_id": integration.id}
        finally:
            session.close()
