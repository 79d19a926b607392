"""
Integration tests for the Kommo API client, against an httpx mock transport.
"""

import json
import pytest
import httpx

from leadlink.core.errors import ExternalPermanent, ExternalTransient
from leadlink.services.kommo_client import KommoClient, contact_phone, is_retryable_status


BASE_URL = "https://example.kommo.com/api/v4"


class RecordingSleep:
    """Replacement for asyncio.sleep that only records delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(handler, sleep=None, **kwargs):
    return KommoClient(
        BASE_URL,
        "test-token",
        transport=httpx.MockTransport(handler),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


class TestRetryPolicy:
    """Test cases for the retry loop."""

    @pytest.mark.parametrize("status,retryable", [
        (429, True), (500, True), (502, True), (503, True),
        (400, False), (401, False), (404, False), (422, False),
    ])
    def test_retryable_statuses(self, status, retryable):
        assert is_retryable_status(status) is retryable

    @pytest.mark.asyncio
    async def test_retries_5xx_with_linear_backoff(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503, json={"title": "Service Unavailable"})
            return httpx.Response(200, json={"id": 1})

        sleep = RecordingSleep()
        client = _client(handler, sleep=sleep)

        assert await client.get_lead(1) == {"id": 1}
        assert len(attempts) == 3
        assert sleep.delays == [1.0, 2.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(429, json={"title": "Too Many Requests"})

        sleep = RecordingSleep()
        client = _client(handler, sleep=sleep, retry_base_delay=0.5)

        with pytest.raises(ExternalTransient) as exc_info:
            await client.get_lead(1)

        assert exc_info.value.status_code == 429
        assert len(attempts) == 3
        assert sleep.delays == [0.5, 1.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(400, json={"title": "Bad Request", "detail": "invalid field"})

        client = _client(handler)

        with pytest.raises(ExternalPermanent) as exc_info:
            await client.patch_lead(7, {"custom_fields_values": []})

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "invalid field"
        assert len(attempts) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            if len(attempts) == 2:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"id": 3})

        client = _client(handler)

        assert await client.get_contact(3) == {"id": 3}
        assert len(attempts) == 3
        await client.close()


class TestKommoEndpoints:
    """Test cases for request shapes."""

    @pytest.mark.asyncio
    async def test_create_lead_payload(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"_embedded": {"leads": [{"id": 555}]}})

        client = _client(handler)
        lead = await client.create_lead("Lead de promo", contact_id="12", tags=["promo"])

        assert lead == {"id": 555}
        assert seen["method"] == "POST"
        assert seen["path"] == "/api/v4/leads"
        assert seen["auth"] == "Bearer test-token"
        assert seen["body"] == [{
            "name": "Lead de promo",
            "_embedded": {"contacts": [{"id": 12}], "tags": [{"name": "promo"}]},
        }]
        await client.close()

    @pytest.mark.asyncio
    async def test_create_contact_without_id_is_permanent(self):
        client = _client(lambda request: httpx.Response(200, json={"_embedded": {"contacts": []}}))

        with pytest.raises(ExternalPermanent):
            await client.create_contact("+5216621234567")
        await client.close()

    @pytest.mark.asyncio
    async def test_find_contact_handles_empty_search(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(204)

        client = _client(handler)

        assert await client.find_contact("+5216621234567") is None
        assert seen["params"] == {"query": "+5216621234567", "limit": "1"}
        await client.close()

    @pytest.mark.asyncio
    async def test_list_leads_by_contact(self):
        def handler(request):
            assert request.url.params["with"] == "leads"
            return httpx.Response(200, json={"id": 9, "_embedded": {"leads": [{"id": 100}, {"id": 101}]}})

        client = _client(handler)

        assert await client.list_leads_by_contact(9) == [{"id": 100}, {"id": 101}]
        await client.close()

    @pytest.mark.asyncio
    async def test_test_connection(self):
        ok = _client(lambda request: httpx.Response(200, json={"id": 1, "name": "Account"}))
        unauthorized = _client(lambda request: httpx.Response(401, json={"title": "Unauthorized"}))
        unconfigured = KommoClient(None, "")

        assert await ok.test_connection() is True
        assert await unauthorized.test_connection() is False
        assert await unconfigured.test_connection() is False
        for client in (ok, unauthorized, unconfigured):
            await client.close()

    def test_contact_phone(self):
        contact = {"custom_fields_values": [
            {"field_code": "EMAIL", "values": [{"value": "a@b.c"}]},
            {"field_code": "PHONE", "values": [{"value": "+5216621234567"}]},
        ]}
        assert contact_phone(contact) == "+5216621234567"
        assert contact_phone({"custom_fields_values": None}) is None
