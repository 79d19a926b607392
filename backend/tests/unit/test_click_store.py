"""
Click store tests against a real SQLite database.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from leadlink.core.errors import StoreUnavailable
from leadlink.models.click import ClickStatus
from leadlink.services.click_store import ClickFilter, ClickStore, StoreConflictError

from conftest import TEST_PHONE, VISITOR_IP


T0 = datetime(2026, 1, 15, 12, 0, 0)


async def _click(store, seconds=0, **fields):
    data = {
        "phone_number": TEST_PHONE,
        "ip_address": VISITOR_IP,
        "kommo_status": ClickStatus.PENDING.value,
        "created_at": T0 + timedelta(seconds=seconds),
    }
    data.update(fields)
    return await store.create(**data)


class TestClickStore:
    """Test cases for ClickStore."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        click = await _click(store, utm_campaign="promo_enero")

        loaded = await store.get(click.id)
        assert loaded.utm_campaign == "promo_enero"
        assert loaded.kommo_lead_id is None
        assert await store.get(str(click.id)) is not None
        assert await store.get("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_find_first_returns_most_recent(self, store):
        await _click(store, seconds=0, utm_source="old")
        await _click(store, seconds=30, utm_source="new")
        await _click(store, seconds=10, utm_source="middle")

        match = await store.find_first(ClickFilter(equals={"phone_number": TEST_PHONE}))
        assert match.utm_source == "new"

    @pytest.mark.asyncio
    async def test_filter_conditions(self, store):
        await _click(store, seconds=0, kommo_status="success", kommo_lead_id="55")
        await _click(store, seconds=60, kommo_status="tracked")
        await _click(store, seconds=120, kommo_status="skipped")

        linkable = ClickFilter(any_of={"kommo_status": ["pending", "tracked"]}, is_null=["kommo_lead_id"])
        assert await store.count(linkable) == 1
        assert await store.count(ClickFilter(not_null=["kommo_lead_id"])) == 1
        assert await store.count(ClickFilter(created_gte=T0 + timedelta(seconds=60))) == 2
        assert await store.count(ClickFilter(created_lte=T0 + timedelta(seconds=60))) == 2

    def test_unknown_filter_field_rejected(self):
        with pytest.raises(ValueError):
            ClickFilter(equals={"kommo_error": "x"}).conditions()

    @pytest.mark.asyncio
    async def test_list_paginates_newest_first(self, store):
        for i in range(5):
            await _click(store, seconds=i, utm_content=str(i))

        page = await store.list(offset=1, limit=2)
        assert [c.utm_content for c in page] == ["3", "2"]

    @pytest.mark.asyncio
    async def test_group_by(self, store):
        await _click(store, kommo_status="pending")
        await _click(store, kommo_status="pending")
        await _click(store, kommo_status="skipped")

        assert await store.group_by("kommo_status") == {"pending": 2, "skipped": 1}

    @pytest.mark.asyncio
    async def test_click_token_is_unique(self, store):
        await _click(store, fbclid="IwAR-token")

        with pytest.raises(StoreConflictError):
            await _click(store, seconds=5, fbclid="IwAR-token")

    @pytest.mark.asyncio
    async def test_update_unless_success_never_overwrites_success(self, store):
        click = await _click(store)

        assert await store.update_unless_success(click.id, kommo_status="success", kommo_lead_id="77")
        assert not await store.update_unless_success(click.id, kommo_status="failed", kommo_error="late")

        loaded = await store.get(click.id)
        assert loaded.kommo_status == "success"
        assert loaded.kommo_lead_id == "77"
        assert loaded.kommo_error is None

    @pytest.mark.asyncio
    async def test_update_unless_success_require_unlinked(self, store):
        click = await _click(store, kommo_status="failed", kommo_lead_id="12")

        assert not await store.update_unless_success(click.id, require_unlinked=True, kommo_lead_id="99")
        assert await store.update_unless_success(click.id, kommo_status="success")

    @pytest.mark.asyncio
    async def test_update_unknown_click(self, store):
        assert await store.update("00000000-0000-0000-0000-000000000000", kommo_status="failed") is False
        assert await store.update("garbage", kommo_status="failed") is False

    @pytest.mark.asyncio
    async def test_database_errors_become_store_unavailable(self):
        session_maker = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        broken = ClickStore(session_maker)

        with pytest.raises(StoreUnavailable):
            await broken.find_first(ClickFilter())
        with pytest.raises(StoreUnavailable):
            await broken.create(phone_number=TEST_PHONE)
