"""
PosTransaction Model
One row per purchase event, recording the review request outcome
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric, ForeignKey, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.database import Base


class SkipReason(str, Enum):
    """Why a purchase did not get a review request."""
    no_phone = "no_phone"
    non_us_number = "non_us_number"
    no_consent = "no_consent"
    no_review_link = "no_review_link"
    limit_reached = "limit_reached"
    recently_contacted = "recently_contacted"
    test_mode_misconfigured = "test_mode_misconfigured"
    location_disabled = "location_disabled"
    refunded = "refunded"


class DeliveryStatus(str, Enum):
    """
    sms_status values.

    Only pending may transition (to sent, failed or a skipped_* status).
    Dead letter requeue is the one administrative exception: failed -> pending.
    """
    pending = "pending"
    sent = "sent"
    failed = "failed"
    skipped_no_phone = "skipped_no_phone"
    skipped_non_us_number = "skipped_non_us_number"
    skipped_no_consent = "skipped_no_consent"
    skipped_no_review_link = "skipped_no_review_link"
    skipped_limit_reached = "skipped_limit_reached"
    skipped_recently_contacted = "skipped_recently_contacted"
    skipped_test_mode_misconfigured = "skipped_test_mode_misconfigured"
    skipped_location_disabled = "skipped_location_disabled"
    skipped_refunded = "skipped_refunded"

    @classmethod
    def skipped(cls, reason: SkipReason) -> "DeliveryStatus":
        return cls(f"skipped_{SkipReason(reason).value}")


class PosTransaction(Base):
    """
    A purchase reported by a POS provider.

    The (pos_integration_id, external_transaction_id) pair is unique, so a
    provider retry can never create a second row or a second SMS.
    """
    __tablename__ = "pos_transactions"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    pos_integration_id = Column(Integer, ForeignKey("pos_integrations.id", ondelete="CASCADE"), nullable=False)

    # Purchase Data
    external_transaction_id = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)
    purchase_amount = Column(Numeric(10, 2), nullable=True)
    location_name = Column(String(255), nullable=True)

    # Delivery State
    sms_status = Column(String(50), default=DeliveryStatus.pending.value, nullable=False)
    # State machine: pending -> sent | failed | skipped_*
    skip_reason = Column(Text, nullable=True)
    sms_sent_at = Column(DateTime(timezone=True), nullable=True)
    provider_message_id = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True)

    __table_args__ = (
        UniqueConstraint('pos_integration_id', 'external_transaction_id', name='uq_pos_transactions_integration_external'),
        Index('ix_pos_transactions_recent_contact', 'account_id', 'customer_phone', 'created_at'),
        Index('ix_pos_transactions_sms_status', 'sms_status'),
    )

    def __repr__(self):
        return f"<PosTransaction(id={self.id}, external_id='{self.external_transaction_id}', status='{self.sms_status}')>"
