"""
PosIntegration Model
Connection between an account and a POS provider (Square or Shopify)
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class PosIntegration(Base):
    """
    One POS connection per account and provider.

    Square integrations are resolved from webhooks by merchant_id,
    Shopify integrations by shop_domain.
    """
    __tablename__ = "pos_integrations"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)

    provider = Column(String(20), nullable=False)
    # square, shopify

    # Provider Identity
    merchant_id = Column(String(255), nullable=True)
    shop_domain = Column(String(255), nullable=True)
    access_token = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Sending Preferences
    test_mode = Column(Boolean, default=False, nullable=False)
    test_phone_number = Column(String(32), nullable=True)
    consent_confirmed = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True)

    account = relationship("Account")
    locations = relationship("PosLocation", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('account_id', 'provider', name='uq_pos_integrations_account_provider'),
        Index('ix_pos_integrations_merchant_id', 'merchant_id'),
        Index('ix_pos_integrations_shop_domain', 'shop_domain'),
    )

    def __repr__(self):
        return f"<PosIntegration(id={self.id}, account_id={self.account_id}, provider='{self.provider}', active={self.is_active})>"
