"""
QuotaReservation Model
Audit trail of SMS quota reserved against an account
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class QuotaReservation(Base):
    """
    Units taken from an account's allowance ahead of a send.

    The account counter is incremented when the reservation is created, so a
    reserved row is already counted. Resolution is one-way:
    reserved -> committed (send succeeded) or reserved -> released (units returned).
    """
    __tablename__ = "quota_reservations"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    transaction_id = Column(Integer, ForeignKey("pos_transactions.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Integer, default=1, nullable=False)
    committed_amount = Column(Integer, nullable=True)

    state = Column(String(20), default="reserved", nullable=False)
    # State machine: reserved -> committed | released

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_quota_reservations_state_created', 'state', 'created_at'),
        Index('ix_quota_reservations_transaction', 'transaction_id', 'state'),
    )

    def __repr__(self):
        return f"<QuotaReservation(id={self.id}, account_id={self.account_id}, amount={self.amount}, state='{self.state}')>"
