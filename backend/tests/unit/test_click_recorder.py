"""
Click recorder tests.
"""

import pytest
from unittest.mock import MagicMock

from leadlink.models.click import ClickStatus
from leadlink.services.click_recorder import ClickPayload, ClickRecorder, initial_status
from leadlink.services.dedup import SAME_SUBJECT_AND_ADDRESS, SAME_SUBJECT_RECENT_SUCCESS, DedupPolicy, DedupResult

from conftest import TEST_PHONE, VISITOR_IP


FRESH = DedupResult()
DUPLICATE = DedupResult(is_duplicate=True, suppress_external_call=True, strategy=SAME_SUBJECT_AND_ADDRESS)


def _payload(**overrides):
    data = {
        "phone_number": TEST_PHONE,
        "utm": {"utm_source": "facebook", "utm_medium": "cpc", "utm_campaign": "promo_enero"},
        "fbclid": "IwAR-token",
        "ip_address": VISITOR_IP,
        "user_agent": "Mozilla/5.0",
    }
    data.update(overrides)
    return ClickPayload(**data)


class TestInitialStatus:
    """Test cases for the initial correlation status."""

    def test_probe_wins(self):
        assert initial_status(True, DUPLICATE) == ClickStatus.SKIPPED

    def test_duplicate_or_suppressed(self):
        suppressed = DedupResult(suppress_external_call=True, strategy=SAME_SUBJECT_RECENT_SUCCESS)
        assert initial_status(False, DUPLICATE) == ClickStatus.DUPLICATE
        assert initial_status(False, suppressed) == ClickStatus.DUPLICATE

    def test_fresh_is_pending(self):
        assert initial_status(False, FRESH) == ClickStatus.PENDING


class TestClickRecorder:
    """Test cases for ClickRecorder.record."""

    @pytest.fixture
    def registrar(self):
        return MagicMock()

    def _recorder(self, store, registrar, clock, **policy):
        return ClickRecorder(store, registrar, DedupPolicy(**policy), clock)

    @pytest.mark.asyncio
    async def test_fresh_click_is_pending_and_spawns_registration(self, store, registrar, clock):
        click = await self._recorder(store, registrar, clock).record(_payload(), False, FRESH)

        assert click.kommo_status == "pending"
        assert click.utm_campaign == "promo_enero"
        assert click.fbclid == "IwAR-token"
        assert click.created_at == clock()
        registrar.spawn.assert_called_once_with(click.id)

    @pytest.mark.asyncio
    async def test_probe_is_skipped_without_registration(self, store, registrar, clock):
        click = await self._recorder(store, registrar, clock).record(_payload(), True, FRESH)

        assert click.kommo_status == "skipped"
        registrar.spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_not_recorded_by_default(self, store, registrar, clock):
        result = await self._recorder(store, registrar, clock).record(_payload(), False, DUPLICATE)

        assert result is None
        assert await store.count() == 0
        registrar.spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_recorded_when_policy_keeps_them(self, store, registrar, clock):
        recorder = self._recorder(store, registrar, clock, record_duplicates=True)
        first = await recorder.record(_payload(), False, FRESH)

        token_dup = DedupResult(is_duplicate=True, suppress_external_call=True, strategy=SAME_SUBJECT_AND_ADDRESS,
                                matched_event=first, token_taken=True)
        second = await recorder.record(_payload(), False, token_dup)

        assert second.kommo_status == "duplicate"
        assert second.fbclid is None
        assert registrar.spawn.call_count == 1

    @pytest.mark.asyncio
    async def test_recent_success_is_recorded_as_duplicate(self, store, registrar, clock):
        suppressed = DedupResult(suppress_external_call=True, strategy=SAME_SUBJECT_RECENT_SUCCESS)

        click = await self._recorder(store, registrar, clock).record(_payload(fbclid=None), False, suppressed)

        assert click.kommo_status == "duplicate"
        registrar.spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_token_race_treated_as_duplicate(self, store, registrar, clock):
        recorder = self._recorder(store, registrar, clock)
        await recorder.record(_payload(), False, FRESH)

        # Evaluation missed the first click; the unique index catches it
        result = await recorder.record(_payload(ip_address="189.203.1.1"), False, FRESH)

        assert result is None
        assert await store.count() == 1
        assert registrar.spawn.call_count == 1

    @pytest.mark.asyncio
    async def test_token_race_recorded_without_token(self, store, registrar, clock):
        recorder = self._recorder(store, registrar, clock, record_duplicates=True)
        await recorder.record(_payload(), False, FRESH)

        result = await recorder.record(_payload(ip_address="189.203.1.1"), False, FRESH)

        assert result.kommo_status == "duplicate"
        assert result.fbclid is None

    @pytest.mark.asyncio
    async def test_campaign_is_resolved_by_name(self, engine, registrar, clock):
        campaign = await engine.campaigns.create_campaign(name="promo_enero", phone_number=TEST_PHONE)

        click = await self._recorder(engine.store, registrar, clock).record(_payload(), False, FRESH)

        assert click.campaign_id == campaign.id
