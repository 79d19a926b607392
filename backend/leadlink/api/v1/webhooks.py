"""
Kommo webhook endpoint.

Kommo posts here when a conversation or lead changes. The payload may be
JSON or form-encoded (``leads[add][0][id]=...``). The endpoint always
answers 200 so Kommo never disables the webhook; processing problems are
only logged.

Routes:
    POST /webhooks/kommo
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Query, Request

from leadlink.api.deps import get_engine
from leadlink.services.engine import AttributionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _read_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}

    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Kommo webhook body is neither JSON nor form data")
        return {}
    return payload if isinstance(payload, dict) else {}


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(provided or "", expected)


@router.post("/kommo")
async def kommo_webhook(
    request: Request,
    secret: Optional[str] = Query(None, description="Shared webhook key"),
    engine: AttributionEngine = Depends(get_engine),
):
    """Reconcile Kommo activity with recent pending clicks."""
    provided = request.headers.get("x-webhook-secret") or secret
    if not _secret_matches(provided, engine.settings.webhook_secret):
        logger.warning("Kommo webhook with invalid secret from %s", request.client.host if request.client else "?")
        return {"success": True, "message": "Webhook ignored"}

    payload = await _read_payload(request)
    logger.info("Kommo webhook received, keys=%s", list(payload.keys()))

    try:
        report = await engine.reconciler.reconcile(payload)
    except Exception:
        logger.exception("Kommo webhook processing failed")
        return {"success": True, "message": "Webhook received"}

    return {"success": True, "message": "Webhook processed", "data": report.to_dict()}
