"""
pytest configuration and fixtures for LeadLink backend tests.
"""

import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine

# Set environment variables before importing app modules
import os
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["KOMMO_DOMAIN"] = ""
os.environ["KOMMO_ACCESS_TOKEN"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["WEBHOOK_SECRET"] = ""
os.environ["ENVIRONMENT"] = "testing"

from leadlink.core.config import Settings
from leadlink.db.postgres import init_db, make_session_maker
from leadlink.services.click_store import ClickStore
from leadlink.services.engine import AttributionEngine


TEST_PHONE = "+5216621234567"
PROBE_IP = "173.252.127.10"
VISITOR_IP = "201.141.20.33"


class FakeClock:
    """Controllable replacement for ``utc_now``."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeKommoClient:
    """In-memory stand-in for KommoClient.

    ``fail_with`` maps a method name to an exception raised on its next calls;
    ``lead_gate`` and ``patch_gate``, when set, block ``create_lead`` and
    ``patch_lead`` until the event is set.
    """

    def __init__(self):
        self.configured = True
        self.closed = False
        self.contacts: Dict[str, dict] = {}
        self.leads: Dict[str, dict] = {}
        self.contact_leads: Dict[str, List[str]] = {}
        self.calls: List[tuple] = []
        self.fail_with: Dict[str, Exception] = {}
        self.lead_gate: Optional[asyncio.Event] = None
        self.patch_gate: Optional[asyncio.Event] = None
        self._next_id = 1000

    def _record(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        exc = self.fail_with.get(name)
        if exc is not None:
            raise exc

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def add_contact_with_lead(self, phone: str) -> tuple:
        """Seed a contact that already has one lead (as Kommo creates on a new chat)."""
        contact_id = self._new_id()
        lead_id = self._new_id()
        self.contacts[str(contact_id)] = _contact(contact_id, phone)
        self.leads[str(lead_id)] = {"id": lead_id, "name": "Chat", "patches": []}
        self.contact_leads[str(contact_id)] = [str(lead_id)]
        return str(contact_id), str(lead_id)

    async def find_contact(self, query: str) -> Optional[dict]:
        self._record("find_contact", query)
        for contact in self.contacts.values():
            if contact["custom_fields_values"][0]["values"][0]["value"] == query:
                return contact
        return None

    async def get_contact(self, contact_id) -> dict:
        self._record("get_contact", contact_id)
        return self.contacts.get(str(contact_id), {})

    async def create_contact(self, phone_number: str, name: Optional[str] = None) -> dict:
        self._record("create_contact", phone_number)
        contact_id = self._new_id()
        contact = _contact(contact_id, phone_number)
        self.contacts[str(contact_id)] = contact
        return contact

    async def create_lead(self, name: str, contact_id=None, tags=None) -> dict:
        self._record("create_lead", name, contact_id, tags)
        if self.lead_gate is not None:
            await self.lead_gate.wait()
        lead_id = self._new_id()
        self.leads[str(lead_id)] = {"id": lead_id, "name": name, "tags": tags or [], "patches": []}
        if contact_id is not None:
            self.contact_leads.setdefault(str(contact_id), []).append(str(lead_id))
        return {"id": lead_id}

    async def patch_lead(self, lead_id, fields: dict) -> dict:
        self._record("patch_lead", lead_id, fields)
        if self.patch_gate is not None:
            await self.patch_gate.wait()
        self.leads.setdefault(str(lead_id), {"id": lead_id, "patches": []})["patches"].append(fields)
        return {"id": lead_id}

    async def get_lead(self, lead_id) -> dict:
        self._record("get_lead", lead_id)
        return self.leads.get(str(lead_id), {})

    async def list_leads_by_contact(self, contact_id) -> list:
        self._record("list_leads_by_contact", contact_id)
        return [self.leads[lead_id] for lead_id in self.contact_leads.get(str(contact_id), [])]

    async def test_connection(self) -> bool:
        return self.configured

    async def close(self):
        self.closed = True


def _contact(contact_id: int, phone: str) -> dict:
    return {
        "id": contact_id,
        "name": phone,
        "custom_fields_values": [{
            "field_code": "PHONE",
            "values": [{"value": phone, "enum_code": "WORK"}],
        }],
    }


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed instant, advanced explicitly by tests."""
    return FakeClock()


@pytest.fixture
def fake_kommo() -> FakeKommoClient:
    """Provide fake Kommo client."""
    return FakeKommoClient()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with Kommo custom field ids and default dedup policy."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        kommo_domain="example.kommo.com",
        kommo_access_token="test-token",
        kommo_field_utm_source=101,
        kommo_field_utm_medium=102,
        kommo_field_utm_campaign=103,
        kommo_field_utm_content=104,
        kommo_field_utm_term=105,
        kommo_field_fbclid=106,
        base_url="https://track.example.com",
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database file per test, with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'leadlink.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return make_session_maker(db_engine)


@pytest.fixture
def store(session_maker) -> ClickStore:
    return ClickStore(session_maker)


@pytest_asyncio.fixture
async def engine(test_settings, session_maker, fake_kommo, clock) -> AsyncGenerator[AttributionEngine, None]:
    """Attribution engine over the test database and the fake Kommo client."""
    attribution = AttributionEngine(test_settings, session_maker, client=fake_kommo, clock=clock)
    yield attribution
    await attribution.registrar.drain(timeout=5)


@pytest_asyncio.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app that uses the test engine."""
    from leadlink.main import create_app

    app = create_app(engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
