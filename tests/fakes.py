"""In-memory OrgMeter API for tests, served through ``httpx.MockTransport``."""
from __future__ import annotations

from typing import Any, Callable

import httpx

from crm.orgmeter_client import OrgMeterClient

BASE_URL = "https://orgmeter.test/api/main/v1"
BASE_PATH = "/api/main/v1"


def _record_id(record: dict) -> str:
    return str(record.get("id") or record.get("_id"))


class FakeOrgMeter:
    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.valid_keys = {"om-key"}
        self.entities: dict[str, list[dict]] = {}
        self.details: dict[tuple[str, str], dict] = {}
        self.sub_entities: dict[tuple[str, str, str], Any] = {}
        self.list_meta: dict[str, dict] = {}
        self.failing: set[tuple[str, str]] = set()
        self.on_detail: Callable[[str, str], None] | None = None
        self.requests: list[httpx.Request] = []

    def add(self, entity_type: str, *records: dict) -> None:
        self.entities.setdefault(entity_type, []).extend(records)

    def paths(self) -> list[str]:
        return [r.url.path.removeprefix(BASE_PATH) for r in self.requests]

    def client_factory(self, api_key: str) -> OrgMeterClient:
        return OrgMeterClient(
            api_key,
            base_url=BASE_URL,
            request_delay=0,
            count_delay=0,
            retry_attempts=1,
            transport=httpx.MockTransport(self.handler),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") not in self.valid_keys:
            return httpx.Response(401, json={"error": "Unauthorized"})

        parts = request.url.path.removeprefix(BASE_PATH).strip("/").split("/")
        page = int(request.url.params.get("page", "1"))
        if len(parts) == 1:
            return self._list(parts[0], page)
        if len(parts) == 2:
            return self._detail(parts[0], parts[1])
        return self._sub(parts[0], parts[1], parts[2], page)

    def _page(self, items: list[dict], page: int) -> list[dict]:
        start = (page - 1) * self.page_size
        return items[start:start + self.page_size]

    def _list(self, entity_type: str, page: int) -> httpx.Response:
        chunk = self._page(self.entities.get(entity_type, []), page)
        if entity_type in self.list_meta:
            return httpx.Response(200, json={"data": chunk, **self.list_meta[entity_type]})
        return httpx.Response(200, json=chunk)

    def _detail(self, entity_type: str, entity_id: str) -> httpx.Response:
        if self.on_detail is not None:
            self.on_detail(entity_type, entity_id)
        if (entity_type, entity_id) in self.failing:
            return httpx.Response(500, text="upstream exploded")
        if (entity_type, entity_id) in self.details:
            return httpx.Response(200, json=self.details[(entity_type, entity_id)])
        for record in self.entities.get(entity_type, []):
            if _record_id(record) == entity_id:
                return httpx.Response(200, json=record)
        return httpx.Response(404, json={"error": "Not found"})

    def _sub(self, entity_type: str, entity_id: str, sub_entity: str, page: int) -> httpx.Response:
        value = self.sub_entities.get((entity_type, entity_id, sub_entity))
        if value is None:
            return httpx.Response(200, json=[])
        if isinstance(value, list):
            return httpx.Response(200, json=self._page(value, page))
        return httpx.Response(200, json=value)
