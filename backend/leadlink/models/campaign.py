"""
Campaign model: a named WhatsApp destination with default UTM values.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid
from sqlalchemy.orm import relationship

from leadlink.db.postgres import Base
from leadlink.models.click import utc_now


class Campaign(Base):
    """Marketing campaign that tracking links are generated for."""

    __tablename__ = "campaigns"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)

    # Default destination
    phone_number = Column(String(20), nullable=False)

    # Default attribution
    default_utm_source = Column(String(200), nullable=True)
    default_utm_medium = Column(String(200), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    # Relationships
    clicks = relationship("Click", back_populates="campaign", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<Campaign {self.name}>"
