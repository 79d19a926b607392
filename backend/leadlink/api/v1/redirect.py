"""
Public WhatsApp redirect endpoints.

Unauthenticated: these are the links published in ads. Every request is
attributed (or classified as a probe or duplicate) and answered with a
landing page holding the WhatsApp button.

Routes:
    GET /wa/{phone}        - tracked redirect
    GET /redirect/{phone}  - alias kept for links already published
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from leadlink.api.deps import get_engine
from leadlink.core.config import settings
from leadlink.middleware.rate_limit import limiter
from leadlink.services.engine import AttributionEngine
from leadlink.services.sanitizer import client_ip

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Redirect"])

NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate, max-age=0"}


@router.get("/wa/{phone}", response_class=HTMLResponse)
@router.get("/redirect/{phone}", response_class=HTMLResponse, include_in_schema=False)
@limiter.limit(settings.rate_limit_redirect)
async def whatsapp_redirect(
    request: Request,
    phone: str,
    engine: AttributionEngine = Depends(get_engine),
):
    """Record the click and render the WhatsApp landing page.

    Query parameters: utm_source, utm_medium, utm_campaign, utm_content,
    utm_term, fbclid, gclid. An invalid phone gets a 400 with a generic page.
    """
    peer = request.client.host if request.client else None
    outcome = await engine.redirects.handle(
        phone,
        request.query_params,
        ip_address=client_ip(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
        referer=request.headers.get("referer"),
    )
    return HTMLResponse(
        content=outcome.html,
        status_code=outcome.status_code,
        headers=NO_CACHE_HEADERS,
    )
