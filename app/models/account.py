"""
Account Model
Business account that owns POS integrations and the monthly SMS allowance
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func
from app.database import Base


class Account(Base):
    """
    A business using the review request pipeline.

    sms_usage_count is the number of SMS units consumed (or reserved) in the
    current billing period. It is only ever changed by QuotaService while the
    row is locked, so it never exceeds sms_usage_limit.
    """
    __tablename__ = "accounts"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Business Profile
    business_name = Column(String(255), nullable=False)
    review_url = Column(Text, nullable=True)

    # SMS Quota
    sms_usage_count = Column(Integer, default=0, nullable=False)
    sms_usage_limit = Column(Integer, default=10, nullable=False)

    subscription_status = Column(String(20), default="trial", nullable=False)
    # trial, active, past_due, canceled

    # Message Preferences
    sms_message_tone = Column(String(20), default="friendly", nullable=False)
    # friendly, professional, grateful, custom
    custom_sms_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True)

    def __repr__(self):
        return f"<Account(id={self.id}, business='{self.business_name}', usage={self.sms_usage_count}/{self.sms_usage_limit})>"
