"""
Tests for the campaign endpoints.
"""

import pytest
from urllib.parse import parse_qs, urlparse

from conftest import TEST_PHONE, VISITOR_IP


CAMPAIGN = {
    "name": "promo_enero",
    "phone_number": "52 1 662 123 4567",
    "description": "January promotion",
    "default_utm_source": "facebook",
    "default_utm_medium": "cpc",
}


class TestCampaignEndpoints:
    """Test cases for /api/v1/campaigns."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        response = await client.post("/api/v1/campaigns", json=CAMPAIGN)

        assert response.status_code == 201
        created = response.json()
        assert created["phone_number"] == TEST_PHONE
        assert created["is_active"] is True

        detail = await client.get(f"/api/v1/campaigns/{created['id']}")
        assert detail.status_code == 200
        assert detail.json()["stats"] == {"total_clicks": 0, "by_status": {}}

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, client):
        await client.post("/api/v1/campaigns", json=CAMPAIGN)
        response = await client.post("/api/v1/campaigns", json=CAMPAIGN)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_phone_rejected(self, client):
        response = await client.post("/api/v1/campaigns", json={**CAMPAIGN, "phone_number": "123"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stats_count_campaign_clicks(self, client, engine):
        created = (await client.post("/api/v1/campaigns", json=CAMPAIGN)).json()
        await client.get(f"/wa/{TEST_PHONE}", params={"utm_campaign": "promo_enero"},
                         headers={"X-Forwarded-For": VISITOR_IP})
        await client.get(f"/wa/{TEST_PHONE}", params={"utm_campaign": "promo_enero"},
                         headers={"X-Forwarded-For": "173.252.127.10"})
        await client.get(f"/wa/{TEST_PHONE}", params={"utm_campaign": "other"},
                         headers={"X-Forwarded-For": "189.203.1.1"})
        await engine.registrar.drain(timeout=5)

        stats = (await client.get(f"/api/v1/campaigns/{created['id']}")).json()["stats"]

        assert stats["total_clicks"] == 2
        assert stats["by_status"] == {"success": 1, "skipped": 1}

    @pytest.mark.asyncio
    async def test_list_update_delete(self, client):
        created = (await client.post("/api/v1/campaigns", json=CAMPAIGN)).json()
        await client.post("/api/v1/campaigns", json={**CAMPAIGN, "name": "cotizacion"})

        updated = await client.patch(f"/api/v1/campaigns/{created['id']}", json={"is_active": False})
        assert updated.status_code == 200
        assert updated.json()["is_active"] is False
        assert updated.json()["default_utm_source"] == "facebook"

        active = (await client.get("/api/v1/campaigns", params={"active": "true"})).json()
        assert [item["name"] for item in active["items"]] == ["cotizacion"]
        assert (await client.get("/api/v1/campaigns")).json()["total"] == 2

        rename = await client.patch(f"/api/v1/campaigns/{created['id']}", json={"name": "cotizacion"})
        assert rename.status_code == 409

        deleted = await client.delete(f"/api/v1/campaigns/{created['id']}")
        assert deleted.status_code == 200
        assert (await client.get(f"/api/v1/campaigns/{created['id']}")).status_code == 404
        assert (await client.delete(f"/api/v1/campaigns/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_tracking_url(self, client):
        created = (await client.post("/api/v1/campaigns", json=CAMPAIGN)).json()

        response = await client.get(
            f"/api/v1/campaigns/{created['id']}/tracking-url",
            params={"utm_content": "video_1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["campaign"] == "promo_enero"
        parsed = urlparse(body["url"])
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://track.example.com/wa/5216621234567"
        assert parse_qs(parsed.query) == {
            "utm_source": ["facebook"],
            "utm_medium": ["cpc"],
            "utm_campaign": ["promo_enero"],
            "utm_content": ["video_1"],
        }

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, client):
        missing = "00000000-0000-0000-0000-000000000000"

        assert (await client.get(f"/api/v1/campaigns/{missing}")).status_code == 404
        assert (await client.get(f"/api/v1/campaigns/{missing}/tracking-url")).status_code == 404
        assert (await client.patch(f"/api/v1/campaigns/{missing}", json={"description": "x"})).status_code == 404
