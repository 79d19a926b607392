"""
Click model: one attributable visit to a WhatsApp redirect link.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import relationship

from leadlink.db.postgres import Base


def utc_now() -> datetime:
    """Naive UTC timestamp, the format stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClickStatus(str, Enum):
    """Correlation state of a click with respect to the CRM."""
    PENDING = "pending"
    TRACKED = "tracked"  # legacy alias of pending, read but never written
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    SUCCESS = "success"
    FAILED = "failed"


# Statuses the webhook reconciler may still link to a lead
LINKABLE_STATUSES = (ClickStatus.PENDING.value, ClickStatus.TRACKED.value)

_ALLOWED_TRANSITIONS = {
    ClickStatus.PENDING: {ClickStatus.SUCCESS, ClickStatus.FAILED},
    ClickStatus.TRACKED: {ClickStatus.SUCCESS, ClickStatus.FAILED},
    ClickStatus.FAILED: {ClickStatus.SUCCESS, ClickStatus.FAILED},
    ClickStatus.SKIPPED: set(),
    ClickStatus.DUPLICATE: set(),
    ClickStatus.SUCCESS: set(),
}


def can_transition(current: str, target: str) -> bool:
    """Whether a click may move from ``current`` to ``target``.

    Initial statuses (pending, skipped, duplicate) are assigned at creation.
    After that a click only moves forward to success or failed; a failed
    click can be retried, and success is terminal.
    """
    return ClickStatus(target) in _ALLOWED_TRANSITIONS[ClickStatus(current)]


class Click(Base):
    """Inbound redirect click with UTM attribution and CRM correlation state."""

    __tablename__ = "clicks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Destination
    phone_number = Column(String(20), nullable=False, index=True)

    # UTM attribution
    utm_source = Column(String(200), nullable=True)
    utm_medium = Column(String(200), nullable=True)
    utm_campaign = Column(String(200), nullable=True, index=True)
    utm_content = Column(String(200), nullable=True)
    utm_term = Column(String(200), nullable=True)

    # Ad platform click identifiers (fbclid is single-use)
    fbclid = Column(String(200), nullable=True, unique=True)
    gclid = Column(String(200), nullable=True)

    # Request context
    ip_address = Column(String(64), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    referer = Column(Text, nullable=True)

    # CRM correlation
    kommo_status = Column(String(20), nullable=False, default=ClickStatus.PENDING.value, index=True)
    kommo_lead_id = Column(String(64), nullable=True)
    kommo_error = Column(Text, nullable=True)

    campaign_id = Column(Uuid(as_uuid=True), ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    # Relationships
    campaign = relationship("Campaign", back_populates="clicks")

    __table_args__ = (
        Index("idx_clicks_phone_ip_created", "phone_number", "ip_address", "created_at"),
        Index("idx_clicks_status_created", "kommo_status", "created_at"),
    )

    @property
    def utm_params(self) -> dict:
        return {
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "utm_content": self.utm_content,
            "utm_term": self.utm_term,
        }

    @property
    def is_linked(self) -> bool:
        return self.kommo_lead_id is not None

    def __repr__(self) -> str:
        return f"<Click {self.id} {self.phone_number} {self.kommo_status}>"


def click_to_dict(click: Click) -> dict:
    """Serialize a click for API responses."""
    return {
        "id": str(click.id),
        "phone_number": click.phone_number,
        "utm_source": click.utm_source,
        "utm_medium": click.utm_medium,
        "utm_campaign": click.utm_campaign,
        "utm_content": click.utm_content,
        "utm_term": click.utm_term,
        "fbclid": click.fbclid,
        "gclid": click.gclid,
        "ip_address": click.ip_address,
        "user_agent": click.user_agent,
        "referer": click.referer,
        "kommo_status": click.kommo_status,
        "kommo_lead_id": click.kommo_lead_id,
        "kommo_error": click.kommo_error,
        "campaign_id": str(click.campaign_id) if click.campaign_id else None,
        "created_at": click.created_at.isoformat() if click.created_at else None,
        "updated_at": click.updated_at.isoformat() if click.updated_at else None,
    }
