"""
PosLocation Model
Physical or online store locations reported by a POS integration
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class PosLocation(Base):
    """
    A store location belonging to an integration.

    Locations discovered from webhooks start disabled; purchases at a
    disabled location are recorded as skipped_location_disabled.
    """
    __tablename__ = "pos_locations"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    pos_integration_id = Column(Integer, ForeignKey("pos_integrations.id", ondelete="CASCADE"), nullable=False)

    external_location_id = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=True)
    is_enabled = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True)

    integration = relationship("PosIntegration", back_populates="locations")

    __table_args__ = (
        UniqueConstraint('pos_integration_id', 'external_location_id', name='uq_pos_locations_integration_location'),
    )

    def __repr__(self):
        return f"<PosLocation(id={self.id}, external_id='{self.external_location_id}', enabled={self.is_enabled})>"
