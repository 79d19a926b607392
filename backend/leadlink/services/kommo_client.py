"""
Kommo CRM API v4 client.

Every call goes through ``_request``, which retries transient failures
(timeouts, connection errors, 429 and 5xx) up to ``max_retries`` attempts
with a linear backoff of ``retry_base_delay * attempt`` seconds. Any other
4xx is permanent and raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from leadlink.core.config import Settings
from leadlink.core.errors import ExternalPermanent, ExternalTransient

logger = logging.getLogger(__name__)

PHONE_FIELD_CODE = "PHONE"


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _first_embedded(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    items = (payload or {}).get("_embedded", {}).get(key) or []
    return items[0] if items else None


def contact_phone(contact: Dict[str, Any]) -> Optional[str]:
    """Phone number stored on a Kommo contact, if any."""
    for field in contact.get("custom_fields_values") or []:
        if field.get("field_code") == PHONE_FIELD_CODE:
            values = field.get("values") or []
            if values and values[0].get("value"):
                return str(values[0]["value"])
    return None


class KommoClient:
    """Async HTTP client for the Kommo REST API."""

    def __init__(
        self,
        base_url: Optional[str],
        access_token: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url or ""
        self.access_token = access_token
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "KommoClient":
        return cls(
            base_url=settings.kommo_base_url,
            access_token=settings.kommo_access_token,
            timeout=settings.kommo_timeout_seconds,
            max_retries=settings.kommo_max_retries,
            retry_base_delay=settings.kommo_retry_base_delay,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.access_token)

    async def close(self):
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        last_error: Optional[ExternalTransient] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self.client.request(method, endpoint, json=data, params=params)
            except httpx.TimeoutException as exc:
                last_error = ExternalTransient(f"Kommo {method} {endpoint} timed out: {exc}")
            except httpx.TransportError as exc:
                last_error = ExternalTransient(f"Kommo {method} {endpoint} got no response: {exc}")
            else:
                logger.debug("Kommo %s %s -> %s", method, endpoint, response.status_code)
                if response.is_success:
                    # Kommo answers 204 with an empty body for empty searches
                    if response.status_code == 204 or not response.content:
                        return {}
                    return response.json()

                detail = _error_detail(response)
                if not is_retryable_status(response.status_code):
                    if response.status_code == 401:
                        logger.error("Kommo authentication failed, check KOMMO_ACCESS_TOKEN")
                    raise ExternalPermanent(
                        f"Kommo {method} {endpoint} failed with {response.status_code}: {detail}",
                        status_code=response.status_code,
                        detail=detail,
                    )
                last_error = ExternalTransient(
                    f"Kommo {method} {endpoint} failed with {response.status_code}: {detail}",
                    status_code=response.status_code,
                    detail=detail,
                )

            if attempt < self.max_retries:
                logger.warning(
                    "Kommo request failed, retrying (%d/%d): %s",
                    attempt,
                    self.max_retries,
                    last_error,
                )
                await self._sleep(self.retry_base_delay * attempt)

        raise last_error

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def find_contact(self, query: str) -> Optional[Dict[str, Any]]:
        """First contact matching a free-text query (phone, name, email)."""
        result = await self._request("GET", "/contacts", params={"query": query, "limit": 1})
        return _first_embedded(result, "contacts")

    async def get_contact(self, contact_id: Any) -> Dict[str, Any]:
        return await self._request("GET", f"/contacts/{contact_id}")

    async def create_contact(self, phone_number: str, name: Optional[str] = None) -> Dict[str, Any]:
        payload = [{
            "name": name or phone_number,
            "custom_fields_values": [{
                "field_code": PHONE_FIELD_CODE,
                "values": [{"value": phone_number, "enum_code": "WORK"}],
            }],
        }]
        result = await self._request("POST", "/contacts", payload)
        contact = _first_embedded(result, "contacts")
        if not contact or not contact.get("id"):
            raise ExternalPermanent("No contact ID returned from Kommo")
        return contact

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def create_lead(
        self,
        name: str,
        contact_id: Any = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        embedded: Dict[str, Any] = {}
        if contact_id is not None:
            embedded["contacts"] = [{"id": int(contact_id)}]
        if tags:
            embedded["tags"] = [{"name": tag} for tag in tags]
        payload = [{"name": name, "_embedded": embedded}]
        result = await self._request("POST", "/leads", payload)
        lead = _first_embedded(result, "leads")
        if not lead or not lead.get("id"):
            raise ExternalPermanent("No lead ID returned from Kommo")
        return lead

    async def patch_lead(self, lead_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/leads/{lead_id}", fields)

    async def get_lead(self, lead_id: Any) -> Dict[str, Any]:
        return await self._request("GET", f"/leads/{lead_id}")

    async def list_leads_by_contact(self, contact_id: Any) -> List[Dict[str, Any]]:
        """Leads linked to a contact, as returned by ``GET /contacts/{id}?with=leads``."""
        result = await self._request("GET", f"/contacts/{contact_id}", params={"with": "leads"})
        return list((result or {}).get("_embedded", {}).get("leads") or [])

    async def test_connection(self) -> bool:
        if not self.configured:
            return False
        try:
            await self._request("GET", "/account")
        except (ExternalPermanent, ExternalTransient) as exc:
            logger.error("Kommo connection failed: %s", exc)
            return False
        logger.info("Kommo connection successful")
        return True


def _error_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return body.get("detail") or body.get("title") or body
    return body
