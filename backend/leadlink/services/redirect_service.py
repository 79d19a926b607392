"""
WhatsApp redirect handling.

Pipeline for one inbound click:
  sanitize -> classify caller -> evaluate dedup windows -> record click
  (-> background lead registration, spawned by the recorder)

Whatever happens in that pipeline, the visitor gets a landing page.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from leadlink.core.errors import InvalidAddress
from leadlink.models.click import Click
from leadlink.services.click_recorder import ClickPayload, ClickRecorder
from leadlink.services.dedup import ClickCandidate, DeduplicationEvaluator
from leadlink.services.landing_page import (
    build_fallback_url,
    build_whatsapp_url,
    render_fallback_page,
    render_landing_page,
)
from leadlink.services.sanitizer import clean_parameter, normalize_address, sanitize_token
from leadlink.services.traffic_classifier import TrafficClassifier

logger = logging.getLogger(__name__)

UTM_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")


@dataclass
class RedirectOutcome:
    html: str
    status_code: int = 200
    whatsapp_url: Optional[str] = None
    click: Optional[Click] = None
    is_probe: bool = False
    is_duplicate: bool = False
    error: Optional[str] = None


class RedirectService:
    """Attribute a redirect click and render the landing page."""

    def __init__(
        self,
        classifier: TrafficClassifier,
        evaluator: DeduplicationEvaluator,
        recorder: ClickRecorder,
        whatsapp_base_url: str,
    ):
        self.classifier = classifier
        self.evaluator = evaluator
        self.recorder = recorder
        self.whatsapp_base_url = whatsapp_base_url

    def build_payload(
        self,
        phone_number: str,
        params: Mapping[str, str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        referer: Optional[str],
    ) -> ClickPayload:
        return ClickPayload(
            phone_number=phone_number,
            utm={name: clean_parameter(params.get(name)) for name in UTM_PARAMS},
            fbclid=sanitize_token(params.get("fbclid")),
            gclid=sanitize_token(params.get("gclid")),
            ip_address=ip_address,
            user_agent=user_agent[:1000] if user_agent else None,
            referer=referer[:2000] if referer else None,
        )

    async def handle(
        self,
        phone: str,
        params: Mapping[str, str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> RedirectOutcome:
        try:
            phone_number = normalize_address(phone)
        except InvalidAddress as exc:
            logger.warning("Invalid redirect phone %r from %s: %s", phone, ip_address, exc.reason)
            fallback_url = build_fallback_url(self.whatsapp_base_url, phone or "")
            return RedirectOutcome(
                html=render_fallback_page(fallback_url),
                status_code=400,
                whatsapp_url=fallback_url,
                error=exc.reason,
            )

        payload = self.build_payload(phone_number, params, ip_address, user_agent, referer)
        whatsapp_url = build_whatsapp_url(self.whatsapp_base_url, phone_number, payload.utm_campaign)

        try:
            is_probe = self.classifier.is_automated_probe(ip_address)
            dedup = await self.evaluator.evaluate(ClickCandidate(
                phone_number=phone_number,
                ip_address=ip_address,
                user_agent=payload.user_agent,
                fbclid=payload.fbclid,
            ))
            logger.info(
                "Processing redirect: phone=%s campaign=%s source=%s ip=%s probe=%s duplicate=%s",
                phone_number,
                payload.utm_campaign,
                payload.utm.get("utm_source"),
                ip_address,
                is_probe,
                dedup.is_duplicate,
            )
            click = await self.recorder.record(payload, is_probe, dedup)
        except Exception as exc:
            # Attribution failures stay invisible to the visitor
            logger.exception("Error in redirect handler for %s", phone_number)
            return RedirectOutcome(
                html=render_fallback_page(build_fallback_url(self.whatsapp_base_url, phone_number)),
                whatsapp_url=whatsapp_url,
                error=str(exc),
            )

        return RedirectOutcome(
            html=render_landing_page(whatsapp_url, payload.utm_campaign),
            whatsapp_url=whatsapp_url,
            click=click,
            is_probe=is_probe,
            is_duplicate=dedup.is_duplicate,
        )
