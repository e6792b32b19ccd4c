"""
PosWebhookEvent Model
Idempotency claims for provider webhook deliveries
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.database import Base


class PosWebhookEvent(Base):
    """
    A claimed (provider, event_id) pair.

    The unique constraint is the whole mechanism: whoever inserts the row first
    owns the event. Rows are pruned after webhook_event_retention_days.
    """
    __tablename__ = "pos_webhook_events"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    provider = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)

    claimed_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_pos_webhook_events_provider_event'),
        Index('ix_pos_webhook_events_claimed_at', 'claimed_at'),
    )

    def __repr__(self):
        return f"<PosWebhookEvent(id={self.id}, provider='{self.provider}', event_id='{self.event_id}')>"
