"""
Attribution engine assembly.

Builds every service with its collaborators injected. The application keeps
one engine on ``app.state``; tests build their own over an in-memory
database and a fake CRM client.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadlink.core.config import Settings
from leadlink.models.click import utc_now
from leadlink.services.campaign_service import CampaignService
from leadlink.services.click_recorder import ClickRecorder
from leadlink.services.click_store import ClickStore
from leadlink.services.dedup import DedupPolicy, DeduplicationEvaluator
from leadlink.services.kommo_client import KommoClient
from leadlink.services.lead_registrar import LeadRegistrar
from leadlink.services.redirect_service import RedirectService
from leadlink.services.traffic_classifier import TrafficClassifier
from leadlink.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


class AttributionEngine:
    """Click attribution and CRM correlation services, wired together."""

    def __init__(
        self,
        settings: Settings,
        session_maker: async_sessionmaker[AsyncSession],
        client: Optional[KommoClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.session_maker = session_maker
        self.client = client or KommoClient.from_settings(settings)
        self.clock = clock

        self.store = ClickStore(session_maker)
        self.policy = DedupPolicy.from_settings(settings)
        self.classifier = TrafficClassifier(settings.probe_prefixes)
        self.evaluator = DeduplicationEvaluator(self.store, self.policy, clock=clock)
        self.registrar = LeadRegistrar(self.store, self.client, settings.kommo_field_ids)
        self.recorder = ClickRecorder(self.store, self.registrar, self.policy, clock=clock)
        self.redirects = RedirectService(
            self.classifier,
            self.evaluator,
            self.recorder,
            whatsapp_base_url=settings.whatsapp_base_url,
        )
        self.reconciler = WebhookReconciler.from_settings(
            settings,
            self.store,
            self.client,
            self.registrar,
            clock=clock,
        )
        self.campaigns = CampaignService(session_maker, self.store)

    async def check_crm(self) -> bool:
        """Log whether the CRM is reachable. Never raises."""
        if not self.client.configured:
            logger.warning("Kommo not configured, registrations will be marked failed until it is")
            return False
        return await self.client.test_connection()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait for in-flight registrations, then close the CRM client."""
        pending = self.registrar.pending_tasks
        if pending:
            logger.info("Waiting for %d background registrations", pending)
        await self.registrar.drain(timeout=timeout)
        await self.client.close()
