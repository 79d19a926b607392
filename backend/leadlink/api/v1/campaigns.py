"""
Campaign API endpoints.

Routes:
    POST   /campaigns                    - create
    GET    /campaigns                    - list (optionally only active ones)
    GET    /campaigns/{id}               - detail with click stats
    PATCH  /campaigns/{id}               - partial update
    DELETE /campaigns/{id}               - delete (clicks keep their UTM values)
    GET    /campaigns/{id}/tracking-url  - redirect link with UTM defaults
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from leadlink.api.deps import get_engine
from leadlink.core.errors import InvalidAddress
from leadlink.services.campaign_service import build_tracking_url, campaign_to_dict
from leadlink.services.click_store import StoreConflictError
from leadlink.services.engine import AttributionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["Campaigns"])


# ============================================================================
# Request / Response Models
# ============================================================================


class CampaignCreate(BaseModel):
    """Create a new campaign."""
    name: str = Field(..., min_length=1, max_length=255)
    phone_number: str = Field(..., min_length=1, max_length=32)
    description: Optional[str] = None
    default_utm_source: Optional[str] = Field(None, max_length=200)
    default_utm_medium: Optional[str] = Field(None, max_length=200)


class CampaignUpdate(BaseModel):
    """Update an existing campaign. Only provided fields change."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone_number: Optional[str] = Field(None, min_length=1, max_length=32)
    description: Optional[str] = None
    default_utm_source: Optional[str] = Field(None, max_length=200)
    default_utm_medium: Optional[str] = Field(None, max_length=200)
    is_active: Optional[bool] = None


class TrackingUrlResponse(BaseModel):
    campaign: str
    url: str


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", status_code=201)
async def create_campaign(data: CampaignCreate, engine: AttributionEngine = Depends(get_engine)):
    try:
        campaign = await engine.campaigns.create_campaign(**data.model_dump())
    except InvalidAddress as exc:
        raise HTTPException(status_code=400, detail=f"Invalid phone number: {exc.reason}")
    except StoreConflictError:
        raise HTTPException(status_code=409, detail="Campaign with this name already exists")
    return campaign_to_dict(campaign)


@router.get("")
async def list_campaigns(
    active: Optional[bool] = Query(None, description="Filter by active flag"),
    engine: AttributionEngine = Depends(get_engine),
):
    campaigns = await engine.campaigns.list_campaigns(active=active)
    return {"items": [campaign_to_dict(c) for c in campaigns], "total": len(campaigns)}


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, engine: AttributionEngine = Depends(get_engine)):
    """Campaign detail with total clicks and a breakdown by Kommo status."""
    campaign = await engine.campaigns.get_campaign(campaign_id)
    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")

    stats = await engine.campaigns.campaign_stats(campaign)
    return {**campaign_to_dict(campaign), "stats": stats}


@router.patch("/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    data: CampaignUpdate,
    engine: AttributionEngine = Depends(get_engine),
):
    try:
        campaign = await engine.campaigns.update_campaign(campaign_id, **data.model_dump(exclude_unset=True))
    except InvalidAddress as exc:
        raise HTTPException(status_code=400, detail=f"Invalid phone number: {exc.reason}")
    except StoreConflictError:
        raise HTTPException(status_code=409, detail="Campaign with this name already exists")

    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign_to_dict(campaign)


@router.delete("/{campaign_id}")
async def delete_campaign(campaign_id: str, engine: AttributionEngine = Depends(get_engine)):
    deleted = await engine.campaigns.delete_campaign(campaign_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return {"success": True, "message": "Campaign deleted"}


@router.get("/{campaign_id}/tracking-url", response_model=TrackingUrlResponse)
async def get_tracking_url(
    campaign_id: str,
    utm_source: Optional[str] = Query(None),
    utm_medium: Optional[str] = Query(None),
    utm_campaign: Optional[str] = Query(None),
    utm_content: Optional[str] = Query(None),
    utm_term: Optional[str] = Query(None),
    engine: AttributionEngine = Depends(get_engine),
):
    """Build the /wa/ link to publish for this campaign."""
    campaign = await engine.campaigns.get_campaign(campaign_id)
    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")

    url = build_tracking_url(
        engine.settings.base_url,
        campaign,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
        utm_content=utm_content,
        utm_term=utm_term,
    )
    return TrackingUrlResponse(campaign=campaign.name, url=url)
