"""
Campaign management.

Campaigns name a WhatsApp destination and its default UTM values. Clicks
are attributed to a campaign through their ``utm_campaign`` value.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadlink.core.errors import StoreUnavailable
from leadlink.models.campaign import Campaign
from leadlink.services.click_store import ClickFilter, ClickStore, StoreConflictError, as_uuid
from leadlink.services.sanitizer import normalize_address

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name",
    "description",
    "phone_number",
    "default_utm_source",
    "default_utm_medium",
    "is_active",
}


def campaign_to_dict(campaign: Campaign) -> dict:
    return {
        "id": str(campaign.id),
        "name": campaign.name,
        "description": campaign.description,
        "phone_number": campaign.phone_number,
        "default_utm_source": campaign.default_utm_source,
        "default_utm_medium": campaign.default_utm_medium,
        "is_active": campaign.is_active,
        "created_at": campaign.created_at.isoformat() if campaign.created_at else None,
        "updated_at": campaign.updated_at.isoformat() if campaign.updated_at else None,
    }


def build_tracking_url(
    base_url: str,
    campaign: Campaign,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    utm_content: Optional[str] = None,
    utm_term: Optional[str] = None,
) -> str:
    """Redirect link for a campaign, filling in its default UTM values.

    ``utm_campaign`` defaults to the campaign name so clicks on the link are
    attributed back to the campaign.
    """
    params = {
        "utm_source": utm_source or campaign.default_utm_source,
        "utm_medium": utm_medium or campaign.default_utm_medium,
        "utm_campaign": utm_campaign or campaign.name,
        "utm_content": utm_content,
        "utm_term": utm_term,
    }
    query = urlencode({key: value for key, value in params.items() if value})
    digits = campaign.phone_number.lstrip("+")
    url = f"{base_url.rstrip('/')}/wa/{digits}"
    return f"{url}?{query}" if query else url


class CampaignService:
    """CRUD over campaigns plus per-campaign click counts."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store: ClickStore):
        self.session_maker = session_maker
        self.store = store

    async def create_campaign(
        self,
        name: str,
        phone_number: str,
        description: Optional[str] = None,
        default_utm_source: Optional[str] = None,
        default_utm_medium: Optional[str] = None,
    ) -> Campaign:
        """Create a campaign. Raises StoreConflictError when the name is taken."""
        campaign = Campaign(
            name=name,
            phone_number=normalize_address(phone_number),
            description=description,
            default_utm_source=default_utm_source,
            default_utm_medium=default_utm_medium,
            is_active=True,
        )
        try:
            async with self.session_maker() as session:
                session.add(campaign)
                await session.commit()
                await session.refresh(campaign)
        except IntegrityError as exc:
            raise StoreConflictError(f"Campaign with name {name!r} already exists") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not create campaign: {exc}") from exc

        logger.info("Campaign created: %s (%s)", campaign.name, campaign.id)
        return campaign

    async def get_campaign(self, campaign_id: Any) -> Optional[Campaign]:
        campaign_uuid = as_uuid(campaign_id)
        if campaign_uuid is None:
            return None
        try:
            async with self.session_maker() as session:
                return await session.get(Campaign, campaign_uuid)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not load campaign {campaign_id}: {exc}") from exc

    async def list_campaigns(self, active: Optional[bool] = None) -> List[Campaign]:
        query = select(Campaign).order_by(Campaign.created_at.desc())
        if active is not None:
            query = query.where(Campaign.is_active == active)
        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"campaign listing failed: {exc}") from exc

    async def update_campaign(self, campaign_id: Any, **fields: Any) -> Optional[Campaign]:
        """Apply a partial update. Returns None when the campaign does not exist."""
        campaign_uuid = as_uuid(campaign_id)
        if campaign_uuid is None:
            return None
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported campaign fields: {sorted(unknown)}")
        if fields.get("phone_number"):
            fields["phone_number"] = normalize_address(fields["phone_number"])

        try:
            async with self.session_maker() as session:
                campaign = await session.get(Campaign, campaign_uuid)
                if campaign is None:
                    return None
                for name, value in fields.items():
                    setattr(campaign, name, value)
                await session.commit()
                await session.refresh(campaign)
        except IntegrityError as exc:
            raise StoreConflictError(f"Campaign with name {fields.get('name')!r} already exists") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not update campaign {campaign_id}: {exc}") from exc

        logger.info("Campaign updated: %s", campaign.id)
        return campaign

    async def delete_campaign(self, campaign_id: Any) -> bool:
        campaign_uuid = as_uuid(campaign_id)
        if campaign_uuid is None:
            return False
        try:
            async with self.session_maker() as session:
                campaign = await session.get(Campaign, campaign_uuid)
                if campaign is None:
                    return False
                await session.delete(campaign)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not delete campaign {campaign_id}: {exc}") from exc

        logger.info("Campaign deleted: %s", campaign_id)
        return True

    async def campaign_stats(self, campaign: Campaign) -> Dict[str, Any]:
        """Total clicks and per-status breakdown for a campaign."""
        click_filter = ClickFilter(equals={"utm_campaign": campaign.name})
        return {
            "total_clicks": await self.store.count(click_filter),
            "by_status": await self.store.group_by("kommo_status", click_filter),
        }
