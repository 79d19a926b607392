"""
SQLAlchemy models for PostgreSQL persistence.
"""

from leadlink.models.click import Click, ClickStatus, LINKABLE_STATUSES, can_transition, click_to_dict, utc_now
from leadlink.models.campaign import Campaign

__all__ = [
    "Click",
    "ClickStatus",
    "LINKABLE_STATUSES",
    "can_transition",
    "click_to_dict",
    "utc_now",
    "Campaign",
]
