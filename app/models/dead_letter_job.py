"""
DeadLetterJob Model
Send jobs that exhausted their retries, kept for inspection and replay
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class DeadLetterJob(Base):
    """
    A failed send job moved off the main queue.

    payload is the original job payload, unchanged, so a requeue re-sends
    exactly what was attempted.
    """
    __tablename__ = "dead_letter_jobs"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    original_job_id = Column(String(64), nullable=False)
    transaction_id = Column(Integer, ForeignKey("pos_transactions.id", ondelete="CASCADE"), nullable=False)

    payload = Column(JSON, nullable=False)

    # Failure Details
    error_message = Column(Text, nullable=True)
    error_type = Column(String(100), nullable=True)
    attempts_made = Column(Integer, nullable=False)

    failed_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_dead_letter_jobs_failed_at', 'failed_at'),
    )

    def __repr__(self):
        return f"<DeadLetterJob(id={self.id}, original_job_id='{self.original_job_id}', attempts={self.attempts_made})>"
