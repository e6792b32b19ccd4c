"""
SendJob Model
Bookkeeping for messages on the SMS send queue
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class SendJob(Base):
    """
    One row per enqueued send message, keyed by the broker message id.

    The broker owns delivery; this table gives the queue counts and the
    per-job history that Redis does not keep.
    """
    __tablename__ = "send_jobs"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    job_id = Column(String(64), unique=True, nullable=False)
    transaction_id = Column(Integer, ForeignKey("pos_transactions.id", ondelete="CASCADE"), nullable=False)

    status = Column(String(20), default="queued", nullable=False)
    # State machine: queued -> active -> completed | failed
    # (active -> active again on retry)

    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    payload = Column(JSON, nullable=False)

    # Timestamps
    enqueued_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_send_jobs_status', 'status'),
        Index('ix_send_jobs_transaction', 'transaction_id'),
    )

    def __repr__(self):
        return f"<SendJob(id={self.id}, job_id='{self.job_id}', status='{self.status}', attempts={self.attempts})>"
