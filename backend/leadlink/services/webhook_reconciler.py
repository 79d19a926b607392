"""
Kommo webhook reconciliation.

When a visitor actually writes on WhatsApp, Kommo notifies us. The
notification does not carry our click id, so the link is made by temporal
proximity: the most recent click that is still pending, has no lead yet and
was created inside the reconciliation window is attributed to the lead.

Each signal in a notification is handled on its own; one failure never
prevents the others from being processed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from leadlink.core.config import Settings
from leadlink.core.errors import ExternalServiceError, InvalidAddress, StoreUnavailable
from leadlink.models.click import LINKABLE_STATUSES, ClickStatus, utc_now
from leadlink.services.click_store import ClickFilter, ClickStore
from leadlink.services.kommo_client import KommoClient, contact_phone
from leadlink.services.lead_registrar import LeadRegistrar
from leadlink.services.sanitizer import normalize_address

logger = logging.getLogger(__name__)

LINKED = "linked"
ALREADY_LINKED = "already_linked"
ORGANIC = "organic"
UNRESOLVED = "unresolved"
FAILED = "failed"

_BRACKET_KEY = re.compile(r"[^\[\]]+")


@dataclass(frozen=True)
class ActivitySignal:
    """A CRM notification reduced to the ids we can correlate on."""
    lead_id: Optional[str] = None
    contact_id: Optional[str] = None


@dataclass
class ReconcileReport:
    linked: int = 0
    already_linked: int = 0
    organic: int = 0
    unresolved: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.linked + self.already_linked + self.organic + self.unresolved + self.failed

    def add(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "linked": self.linked,
            "already_linked": self.already_linked,
            "organic": self.organic,
            "unresolved": self.unresolved,
            "failed": self.failed,
        }


# ----------------------------------------------------------------------
# Payload parsing
# ----------------------------------------------------------------------

def unflatten_form(form: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn PHP-style bracket keys (``leads[add][0][id]``) into nested dicts."""
    nested: Dict[str, Any] = {}
    for key, value in form.items():
        parts = _BRACKET_KEY.findall(key)
        if not parts:
            continue
        node = nested
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return nested


def _items(container: Any) -> List[Dict[str, Any]]:
    # Form-encoded payloads index list items as dict keys ("0", "1", ...)
    if isinstance(container, list):
        return [item for item in container if isinstance(item, dict)]
    if isinstance(container, dict):
        if all(str(key).isdigit() for key in container):
            return [container[key] for key in sorted(container, key=int) if isinstance(container[key], dict)]
        return [container]
    return []


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_signals(payload: Mapping[str, Any]) -> List[ActivitySignal]:
    """Extract the activity signals of a webhook payload, without duplicates.

    Understands ``{"message": {"contact_id": ...}}``, Kommo's event sections
    (``leads``, ``message``, ``contacts`` with ``add``/``update``/``status``
    lists) and their form-encoded bracket-key equivalents.
    """
    if any("[" in str(key) for key in payload):
        payload = unflatten_form(payload)

    signals: List[ActivitySignal] = []

    message = payload.get("message")
    if isinstance(message, dict):
        if "contact_id" in message or "lead_id" in message:
            signals.append(ActivitySignal(
                lead_id=_text(message.get("lead_id")),
                contact_id=_text(message.get("contact_id")),
            ))
        for event in ("add", "update"):
            for item in _items(message.get(event)):
                lead_id = item.get("entity_id") if item.get("entity_type") == "lead" else None
                signals.append(ActivitySignal(
                    lead_id=_text(lead_id),
                    contact_id=_text(item.get("contact_id")),
                ))

    leads = payload.get("leads")
    if isinstance(leads, dict):
        for event in ("add", "status", "update"):
            for item in _items(leads.get(event)):
                signals.append(ActivitySignal(lead_id=_text(item.get("id"))))

    contacts = payload.get("contacts")
    if isinstance(contacts, dict):
        for event in ("add", "update"):
            for item in _items(contacts.get(event)):
                signals.append(ActivitySignal(contact_id=_text(item.get("id"))))

    unique: List[ActivitySignal] = []
    for signal in signals:
        if (signal.lead_id or signal.contact_id) and signal not in unique:
            unique.append(signal)
    return unique


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------

class WebhookReconciler:
    """Link CRM activity to the most recent unlinked pending click."""

    def __init__(
        self,
        store: ClickStore,
        client: KommoClient,
        registrar: LeadRegistrar,
        window: timedelta = timedelta(minutes=15),
        match_phone: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.registrar = registrar
        self.window = window
        self.match_phone = match_phone
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ClickStore,
        client: KommoClient,
        registrar: LeadRegistrar,
        clock: Callable[[], datetime] = utc_now,
    ) -> "WebhookReconciler":
        return cls(
            store,
            client,
            registrar,
            window=timedelta(seconds=settings.reconcile_window_seconds),
            match_phone=settings.reconcile_match_phone,
            clock=clock,
        )

    async def reconcile(self, payload: Mapping[str, Any]) -> ReconcileReport:
        """Process every signal of a webhook payload.

        Kommo often reports the same lead several times in one notification
        (``leads.add``, ``leads.status`` and ``message.add``); each lead is
        reconciled at most once per payload.
        """
        report = ReconcileReport()
        signals = parse_signals(payload)
        if not signals:
            logger.info("Kommo webhook without usable ids, keys=%s", list(payload.keys()))
            return report

        seen_leads: Set[str] = set()
        for signal in signals:
            outcome = await self.reconcile_signal(signal, seen_leads)
            if outcome is not None:
                report.add(outcome)

        logger.info("Kommo webhook processed: %s", report.to_dict())
        return report

    async def reconcile_signal(self, signal: ActivitySignal, seen_leads: Optional[Set[str]] = None) -> Optional[str]:
        """Reconcile one signal.

        Returns linked, already_linked, organic, unresolved or failed, or
        None when the signal's lead was already handled in ``seen_leads``.
        """
        try:
            return await self._reconcile(signal, seen_leads if seen_leads is not None else set())
        except ExternalServiceError as exc:
            logger.error("Kommo call failed while reconciling %s: %s", signal, exc)
        except StoreUnavailable as exc:
            logger.error("Store unavailable while reconciling %s: %s", signal, exc)
        except Exception:
            logger.exception("Unexpected error reconciling %s", signal)
        return FAILED

    async def resolve_lead(self, signal: ActivitySignal) -> Optional[str]:
        if signal.lead_id:
            return signal.lead_id
        leads = await self.client.list_leads_by_contact(signal.contact_id)
        if not leads:
            return None
        return _text(leads[0].get("id"))

    async def resolve_phone(self, signal: ActivitySignal) -> Optional[str]:
        if not self.match_phone or not signal.contact_id:
            return None
        contact = await self.client.get_contact(signal.contact_id)
        raw = contact_phone(contact or {})
        try:
            return normalize_address(raw)
        except InvalidAddress:
            logger.warning("Contact %s has no usable phone, matching on time only", signal.contact_id)
            return None

    def candidate_filter(self, phone_number: Optional[str] = None) -> ClickFilter:
        equals = {"phone_number": phone_number} if phone_number else {}
        return ClickFilter(
            equals=equals,
            any_of={"kommo_status": LINKABLE_STATUSES},
            is_null=["kommo_lead_id"],
            created_gte=self.clock() - self.window,
        )

    async def lead_is_owned(self, lead_id: str) -> bool:
        """True when a click already holds the lead, or a registration is creating it."""
        if self.registrar.is_registering(lead_id):
            return True
        owner = await self.store.find_first(ClickFilter(equals={"kommo_lead_id": lead_id}))
        return owner is not None

    async def _reconcile(self, signal: ActivitySignal, seen_leads: Set[str]) -> Optional[str]:
        lead_id = await self.resolve_lead(signal)
        if lead_id is None:
            logger.warning("No lead found for contact %s", signal.contact_id)
            return UNRESOLVED
        if lead_id in seen_leads:
            logger.debug("Lead %s already handled in this notification", lead_id)
            return None
        seen_leads.add(lead_id)

        if await self.lead_is_owned(lead_id):
            logger.info("Lead %s already belongs to a click, nothing to link", lead_id)
            return ALREADY_LINKED

        phone_number = await self.resolve_phone(signal)
        candidate = await self.store.find_first(self.candidate_filter(phone_number))
        if candidate is None:
            logger.info("No recent pending click for lead %s, treating as organic", lead_id)
            return ORGANIC

        async with self.registrar.lock_for(candidate.id):
            # Re-read under the lock: a registration may have linked it meanwhile
            click = await self.store.get(candidate.id)
            if click is None or click.kommo_status == ClickStatus.SUCCESS.value or click.kommo_lead_id:
                logger.info("Click %s was linked concurrently, lead %s left organic", candidate.id, lead_id)
                return ORGANIC
            if await self.lead_is_owned(lead_id):
                logger.info("Lead %s was claimed concurrently, nothing to link", lead_id)
                return ALREADY_LINKED

            await self.registrar.attach_attribution(lead_id, click)
            updated = await self.store.update_unless_success(
                click.id,
                require_unlinked=True,
                kommo_status=ClickStatus.SUCCESS.value,
                kommo_lead_id=lead_id,
                kommo_error=None,
            )

        if not updated:
            logger.info("Click %s was linked concurrently, lead %s left organic", click.id, lead_id)
            return ORGANIC

        logger.info(
            "Linked lead %s to click %s (campaign=%s, source=%s)",
            lead_id,
            click.id,
            click.utm_campaign,
            click.utm_source,
        )
        return LINKED
