"""
Click administration endpoints.

Routes:
    GET  /clicks              - paginated click list with filters
    GET  /clicks/{id}         - single click
    POST /clicks/{id}/retry   - re-run Kommo registration in the background
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from leadlink.api.deps import get_engine
from leadlink.models.click import ClickStatus, click_to_dict
from leadlink.services.click_store import ClickFilter
from leadlink.services.engine import AttributionEngine
from leadlink.services.lead_registrar import RetryOutcome
from leadlink.services.sanitizer import is_valid_address, normalize_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clicks", tags=["Clicks"])


@router.get("")
async def list_clicks(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    campaign: Optional[str] = Query(None, description="utm_campaign value"),
    source: Optional[str] = Query(None, description="utm_source value"),
    status: Optional[ClickStatus] = Query(None, description="Kommo correlation status"),
    phone: Optional[str] = Query(None),
    engine: AttributionEngine = Depends(get_engine),
):
    """List clicks, most recent first."""
    equals = {}
    if campaign:
        equals["utm_campaign"] = campaign
    if source:
        equals["utm_source"] = source
    if status:
        equals["kommo_status"] = status.value
    if phone:
        if not is_valid_address(phone):
            raise HTTPException(status_code=400, detail="Invalid phone number format")
        equals["phone_number"] = normalize_address(phone)

    click_filter = ClickFilter(equals=equals)
    clicks = await engine.store.list(click_filter, offset=(page - 1) * limit, limit=limit)
    total = await engine.store.count(click_filter)

    return {
        "items": [click_to_dict(click) for click in clicks],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/{click_id}")
async def get_click(click_id: str, engine: AttributionEngine = Depends(get_engine)):
    click = await engine.store.get(click_id)
    if click is None:
        raise HTTPException(status_code=404, detail="Click not found")
    return click_to_dict(click)


@router.post("/{click_id}/retry", status_code=202)
async def retry_click(click_id: str, engine: AttributionEngine = Depends(get_engine)):
    """Schedule a new Kommo registration attempt for a click.

    Returns immediately; the outcome lands on the click's stored status.
    """
    outcome = await engine.registrar.retry(click_id)

    if outcome == RetryOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Click not found")
    if outcome == RetryOutcome.ALREADY_LINKED:
        raise HTTPException(status_code=409, detail="Click is already linked to a Kommo lead")
    if outcome == RetryOutcome.NOT_RETRYABLE:
        raise HTTPException(status_code=409, detail="Click is a probe or duplicate and is never registered")

    return {"success": True, "click_id": click_id, "status": outcome.value}
