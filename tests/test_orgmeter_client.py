from __future__ import annotations

import httpx
import pytest

from crm.orgmeter_client import OrgMeterClient, OrgMeterError
from fakes import BASE_URL, FakeOrgMeter


def _client(handler, **kwargs) -> OrgMeterClient:
    options = {"request_delay": 0, "count_delay": 0, "retry_attempts": 1}
    options.update(kwargs)
    return OrgMeterClient("om-key", base_url=BASE_URL, transport=httpx.MockTransport(handler), **options)


async def test_sends_raw_api_key_as_authorization_header() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["page"] = request.url.params["page"]
        return httpx.Response(200, json=[])

    async with _client(handler) as client:
        assert await client.fetch_entity_page("lender") == []

    assert seen == {"auth": "om-key", "page": "1"}


async def test_fetch_entity_page_unwraps_data_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"id": 1}], "total": 1})

    async with _client(handler) as client:
        assert await client.fetch_entity_page("merchant") == [{"id": 1}]


async def test_fetch_entity_page_treats_unexpected_body_as_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"message": "nothing here"})

    async with _client(handler) as client:
        assert await client.fetch_entity_page("merchant") == []


async def test_fetch_all_entities_pages_until_empty() -> None:
    fake = FakeOrgMeter(page_size=2)
    fake.add("iso", *[{"id": i, "name": f"ISO {i}"} for i in range(1, 6)])

    async with fake.client_factory("om-key") as client:
        records = await client.fetch_all_entities("iso")

    assert [r["id"] for r in records] == [1, 2, 3, 4, 5]
    # three full or partial pages, then the empty page that ends the loop
    assert fake.paths() == ["/iso"] * 4


async def test_fetch_all_entities_honours_limit() -> None:
    fake = FakeOrgMeter(page_size=2)
    fake.add("iso", *[{"id": i} for i in range(1, 6)])

    async with fake.client_factory("om-key") as client:
        records = await client.fetch_all_entities("iso", limit=3)

    assert [r["id"] for r in records] == [1, 2, 3]
    assert len(fake.requests) == 2


async def test_fetch_all_sub_entities_single_object_stops_paging() -> None:
    fake = FakeOrgMeter()
    fake.sub_entities[("advance", "7", "underwriting")] = {"id": 70, "advanceId": 7}

    async with fake.client_factory("om-key") as client:
        records = await client.fetch_all_sub_entities("advance", 7, "underwriting")

    assert records == [{"id": 70, "advanceId": 7}]
    assert len(fake.requests) == 1


async def test_fetch_all_sub_entities_pages_lists() -> None:
    fake = FakeOrgMeter(page_size=2)
    fake.sub_entities[("advance", "7", "payment")] = [{"id": p} for p in range(1, 4)]

    async with fake.client_factory("om-key") as client:
        records = await client.fetch_all_sub_entities("advance", 7, "payment")

    assert [r["id"] for r in records] == [1, 2, 3]


async def test_get_total_count_prefers_total_field() -> None:
    fake = FakeOrgMeter()
    fake.add("merchant", {"id": 1})
    fake.list_meta["merchant"] = {"total": 250}

    async with fake.client_factory("om-key") as client:
        assert await client.get_total_count("merchant") == 250


async def test_get_total_count_counts_pages_without_metadata() -> None:
    fake = FakeOrgMeter(page_size=2)
    fake.add("merchant", *[{"id": i} for i in range(1, 6)])

    async with fake.client_factory("om-key") as client:
        assert await client.get_total_count("merchant") == 5


async def test_get_total_count_returns_zero_on_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden")

    async with _client(handler) as client:
        assert await client.get_total_count("merchant") == 0


async def test_get_total_count_returns_zero_on_malformed_total() -> None:
    fake = FakeOrgMeter()
    fake.add("merchant", {"id": 1})
    fake.list_meta["merchant"] = {"total": "lots"}

    async with fake.client_factory("om-key") as client:
        assert await client.get_total_count("merchant") == 0


async def test_fetch_data_wraps_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    async with _client(handler) as client:
        with pytest.raises(OrgMeterError, match="Failed to fetch data from /advance/9"):
            await client.fetch_entity_by_id("advance", 9)


async def test_retries_transient_server_errors() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"id": 1, "name": "Lender"})

    async with _client(handler, retry_attempts=3) as client:
        assert await client.fetch_entity_by_id("lender", 1) == {"id": 1, "name": "Lender"}

    assert calls["n"] == 3


async def test_client_errors_are_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, text="bad request")

    async with _client(handler, retry_attempts=3) as client:
        with pytest.raises(OrgMeterError):
            await client.fetch_data("/lender")

    assert calls["n"] == 1


async def test_test_connection_false_on_auth_error() -> None:
    fake = FakeOrgMeter()

    async with fake.client_factory("wrong-key") as client:
        assert await client.test_connection() is False
    async with fake.client_factory("om-key") as client:
        assert await client.test_connection() is True


def test_get_api_info_hides_key() -> None:
    client = OrgMeterClient("om-key", base_url=BASE_URL + "/", timeout=5)
    assert client.get_api_info() == {"base_url": BASE_URL, "has_api_key": True, "timeout": 5}
