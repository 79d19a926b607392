"""
External lead registration.

Turns a pending click into a Kommo lead:

  1. find the Kommo contact by phone, or create it (search first, so a
     retried registration never duplicates the contact)
  2. create the lead linked to that contact, tagged with the campaign
  3. write the UTM values into the lead's custom fields

Registration runs as a background asyncio task spawned by the click recorder;
the HTTP response never waits for it. Its outcome only ever reaches the
click's stored state (success + lead id, or failed + error text).
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from leadlink.core.errors import ExternalServiceError, StoreUnavailable
from leadlink.models.click import Click, ClickStatus, can_transition
from leadlink.services.click_store import ClickStore
from leadlink.services.kommo_client import KommoClient

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass
class RegistrationResult:
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


class RetryOutcome(str, Enum):
    SCHEDULED = "scheduled"
    NOT_FOUND = "not_found"
    ALREADY_LINKED = "already_linked"
    NOT_RETRYABLE = "not_retryable"


# Statuses a manual retry may re-register
RETRYABLE_STATUSES = {ClickStatus.FAILED.value, ClickStatus.PENDING.value, ClickStatus.TRACKED.value}


class LeadRegistrar:
    """Create and update Kommo leads for clicks, with per-click serialization."""

    def __init__(
        self,
        store: ClickStore,
        client: KommoClient,
        field_ids: Optional[Dict[str, int]] = None,
    ):
        self.store = store
        self.client = client
        self.field_ids = dict(field_ids or {})
        self._tasks: Set[asyncio.Task] = set()
        # Leads created by an in-flight registration, not yet stored on the click
        self._registering: Set[str] = set()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # CRM call chain
    # ------------------------------------------------------------------

    def attribution_fields(self, click: Click) -> List[Dict[str, Any]]:
        """Kommo ``custom_fields_values`` for the click's attribution payload."""
        fields = []
        for attribute, field_id in self.field_ids.items():
            value = getattr(click, attribute, None)
            if value:
                fields.append({"field_id": int(field_id), "values": [{"value": value}]})
        return fields

    async def attach_attribution(self, lead_id: Any, click: Click, include_tag: bool = True) -> None:
        """Write the click's UTM values (and campaign tag) onto an existing lead."""
        fields = self.attribution_fields(click)
        if fields:
            await self.client.patch_lead(lead_id, {"custom_fields_values": fields})
        else:
            logger.warning("No Kommo custom fields configured or no UTM values for click %s", click.id)

        if include_tag and click.utm_campaign:
            await self.client.patch_lead(lead_id, {"_embedded": {"tags": [{"name": click.utm_campaign}]}})

    async def find_or_create_contact(self, phone_number: str) -> Any:
        contact = await self.client.find_contact(phone_number)
        if contact and contact.get("id"):
            logger.info("Reusing Kommo contact %s for %s", contact["id"], phone_number)
            return contact["id"]
        contact = await self.client.create_contact(phone_number)
        logger.info("Created Kommo contact %s for %s", contact["id"], phone_number)
        return contact["id"]

    async def register_lead(self, click: Click) -> RegistrationResult:
        """Run the call chain for one click. Never raises for CRM failures.

        A lead id left on the click by an earlier partial attempt is reused
        instead of creating a second lead.
        """
        if not self.client.configured:
            logger.warning("Kommo not configured, skipping lead creation for click %s", click.id)
            return RegistrationResult(success=False, error="Kommo not configured")

        lead_id: Optional[str] = click.kommo_lead_id
        try:
            if lead_id is None:
                contact_id = await self.find_or_create_contact(click.phone_number)
                lead = await self.client.create_lead(
                    name=f"Lead de {click.utm_campaign or 'WhatsApp'}",
                    contact_id=contact_id,
                    tags=[click.utm_campaign] if click.utm_campaign else None,
                )
                lead_id = str(lead["id"])
                self._registering.add(lead_id)
                logger.info("Created Kommo lead %s for click %s", lead_id, click.id)
                await self.attach_attribution(lead_id, click, include_tag=False)
            else:
                logger.info("Resuming registration of click %s on lead %s", click.id, lead_id)
                await self.attach_attribution(lead_id, click)
        except ExternalServiceError as exc:
            logger.error("Kommo registration failed for click %s: %s", click.id, exc)
            return RegistrationResult(success=False, external_id=lead_id, error=str(exc))

        return RegistrationResult(success=True, external_id=lead_id)

    # ------------------------------------------------------------------
    # Background path
    # ------------------------------------------------------------------

    def lock_for(self, click_id: Any) -> asyncio.Lock:
        """Lock serializing every state write for one click."""
        key = str(click_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def run_registration(self, click_id: Any) -> Optional[RegistrationResult]:
        """Register a stored click and persist the outcome on it."""
        async with self.lock_for(click_id):
            try:
                click = await self.store.get(click_id)
            except StoreUnavailable as exc:
                logger.error("Abandoning registration of click %s: %s", click_id, exc)
                return None

            if click is None:
                logger.warning("Click %s vanished before registration", click_id)
                return None
            if not can_transition(click.kommo_status, ClickStatus.SUCCESS.value):
                logger.info("Click %s is %s, not registering", click_id, click.kommo_status)
                return None

            result = await self.register_lead(click)

            try:
                return await self._persist_outcome(click_id, result)
            finally:
                if result.external_id:
                    self._registering.discard(result.external_id)

    async def _persist_outcome(self, click_id: Any, result: RegistrationResult) -> RegistrationResult:
        if result.success:
            changes = {
                "kommo_status": ClickStatus.SUCCESS.value,
                "kommo_lead_id": result.external_id,
                "kommo_error": None,
            }
        else:
            changes = {
                "kommo_status": ClickStatus.FAILED.value,
                "kommo_lead_id": result.external_id,
                "kommo_error": (result.error or "unknown error")[:MAX_ERROR_LENGTH],
            }

        try:
            updated = await self.store.update_unless_success(click_id, **changes)
        except StoreUnavailable as exc:
            logger.error("Could not persist registration outcome for click %s: %s", click_id, exc)
            return result

        if not updated:
            logger.info("Click %s was linked concurrently, keeping existing link", click_id)
        else:
            logger.info(
                "Kommo lead registration completed: click=%s success=%s lead=%s",
                click_id,
                result.success,
                result.external_id,
            )
        return result

    async def _run_in_background(self, click_id: Any) -> None:
        try:
            await self.run_registration(click_id)
        except Exception:
            logger.exception("Background Kommo lead creation failed for click %s", click_id)
            try:
                async with self.lock_for(click_id):
                    await self.store.update_unless_success(
                        click_id,
                        kommo_status=ClickStatus.FAILED.value,
                        kommo_error="unexpected error during registration",
                    )
            except Exception:
                logger.exception("Could not mark click %s as failed", click_id)

    def spawn(self, click_id: Any) -> asyncio.Task:
        """Schedule registration without waiting for it."""
        task = asyncio.create_task(self._run_in_background(click_id), name=f"register-lead-{click_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def retry(self, click_id: Any) -> RetryOutcome:
        """Re-run registration for a click that has not reached success."""
        click = await self.store.get(click_id)
        if click is None:
            return RetryOutcome.NOT_FOUND
        if click.kommo_status == ClickStatus.SUCCESS.value:
            return RetryOutcome.ALREADY_LINKED
        if click.kommo_status not in RETRYABLE_STATUSES:
            return RetryOutcome.NOT_RETRYABLE

        logger.info("Retrying Kommo registration for click %s (was %s)", click_id, click.kommo_status)
        self.spawn(click.id)
        return RetryOutcome.SCHEDULED

    def is_registering(self, lead_id: Any) -> bool:
        return str(lead_id) in self._registering

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight registrations (used at shutdown and in tests)."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)
