"""
Click recording.

Persists an attributable click with its initial correlation status and, for
pending clicks, hands it to the lead registrar in the background.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from leadlink.models.click import Click, ClickStatus, utc_now
from leadlink.services.click_store import ClickStore, StoreConflictError
from leadlink.services.dedup import DedupPolicy, DedupResult
from leadlink.services.lead_registrar import LeadRegistrar

logger = logging.getLogger(__name__)


@dataclass
class ClickPayload:
    """Sanitized data of one redirect request."""
    phone_number: str
    utm: Dict[str, Optional[str]] = field(default_factory=dict)
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None

    @property
    def utm_campaign(self) -> Optional[str]:
        return self.utm.get("utm_campaign")


def initial_status(is_probe: bool, dedup: DedupResult) -> ClickStatus:
    if is_probe:
        return ClickStatus.SKIPPED
    if dedup.is_duplicate or dedup.suppress_external_call:
        return ClickStatus.DUPLICATE
    return ClickStatus.PENDING


class ClickRecorder:
    """Create click records and trigger background registration."""

    def __init__(
        self,
        store: ClickStore,
        registrar: LeadRegistrar,
        policy: DedupPolicy,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.registrar = registrar
        self.policy = policy
        self.clock = clock

    async def record(self, payload: ClickPayload, is_probe: bool, dedup: DedupResult) -> Optional[Click]:
        """Persist the click unless the policy suppresses duplicates.

        Returns the stored click, or None when nothing was recorded.
        """
        if dedup.is_duplicate and not self.policy.record_duplicates:
            logger.info(
                "Not recording duplicate click for %s (strategy=%s)",
                payload.phone_number,
                dedup.strategy,
            )
            return None

        status = initial_status(is_probe, dedup)
        # A click token stays attached to the first click that carried it
        fbclid = None if dedup.token_taken else payload.fbclid

        try:
            click = await self._create(payload, status, fbclid)
        except StoreConflictError:
            # Another request stored the same token between evaluation and insert
            logger.info("Click token %s already recorded, treating as duplicate", payload.fbclid)
            if not self.policy.record_duplicates:
                return None
            return await self._create(payload, ClickStatus.SKIPPED if is_probe else ClickStatus.DUPLICATE, None)

        logger.info(
            "Recorded click %s for %s (status=%s, campaign=%s, ip=%s)",
            click.id,
            click.phone_number,
            click.kommo_status,
            click.utm_campaign,
            click.ip_address,
        )

        if status == ClickStatus.PENDING:
            self.registrar.spawn(click.id)
        return click

    async def _create(self, payload: ClickPayload, status: ClickStatus, fbclid: Optional[str]) -> Click:
        campaign_id = await self.store.campaign_id_for(payload.utm_campaign)
        return await self.store.create(
            phone_number=payload.phone_number,
            utm_source=payload.utm.get("utm_source"),
            utm_medium=payload.utm.get("utm_medium"),
            utm_campaign=payload.utm.get("utm_campaign"),
            utm_content=payload.utm.get("utm_content"),
            utm_term=payload.utm.get("utm_term"),
            fbclid=fbclid,
            gclid=payload.gclid,
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            referer=payload.referer,
            kommo_status=status.value,
            campaign_id=campaign_id,
            created_at=self.clock(),
        )
