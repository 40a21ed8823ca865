"""Async client for the OrgMeter REST API.

Wraps ``httpx.AsyncClient`` with the OrgMeter auth header, page-by-page
listing helpers and retry with exponential backoff on transient failures.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import settings

logger = logging.getLogger(__name__)


class OrgMeterError(Exception):
    """Raised when an OrgMeter API call fails."""
    pass


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


def _unwrap_list(body: Any) -> list[dict]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    return []


class OrgMeterClient:
    """Thin async wrapper over the OrgMeter API.

    Usage:
        async with OrgMeterClient(api_key) as client:
            lenders = await client.fetch_all_entities("lender")
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        request_delay: float | None = None,
        count_delay: float | None = None,
        retry_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        cfg = settings.orgmeter
        self.api_key = api_key
        self.base_url = (base_url or cfg.api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else cfg.timeout_seconds
        self.request_delay = request_delay if request_delay is not None else cfg.request_delay_ms / 1000
        self.count_delay = count_delay if count_delay is not None else cfg.count_delay_ms / 1000
        self.retry_attempts = retry_attempts or cfg.retry_attempts
        self.max_count_pages = cfg.max_count_pages

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"{api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=self.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> OrgMeterClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def delay(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def _get(self, endpoint: str, params: dict | None = None) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=settings.orgmeter.retry_min_wait,
                max=settings.orgmeter.retry_max_wait,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                logger.debug(f"OrgMeter API Request: GET {endpoint} {params or ''}")
                response = await self._client.get(endpoint, params=params)
                logger.debug(f"OrgMeter API Response: {response.status_code} {endpoint}")
                response.raise_for_status()
                return response.json()

    async def fetch_data(self, endpoint: str, params: dict | None = None) -> Any:
        """GET an endpoint and return the decoded JSON body.

        Raises:
            OrgMeterError: On HTTP, transport or decoding failure
        """
        try:
            return await self._get(endpoint, params)
        except httpx.HTTPStatusError as e:
            snippet = e.response.text[:200]
            logger.error(f"OrgMeter API error {e.response.status_code} on {endpoint}: {snippet}")
            raise OrgMeterError(
                f"Failed to fetch data from {endpoint}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"OrgMeter API request to {endpoint} failed: {e}")
            raise OrgMeterError(f"Failed to fetch data from {endpoint}: {e}") from e

    async def fetch_entity_page(self, entity_type: str, page: int = 1) -> list[dict]:
        body = await self.fetch_data(f"/{entity_type}", {"page": page})
        return _unwrap_list(body)

    async def fetch_all_entities(
        self,
        entity_type: str,
        start_page: int = 1,
        limit: int | None = None,
    ) -> list[dict]:
        """Fetch every page of an entity until an empty page is returned.

        Args:
            entity_type: OrgMeter entity endpoint (e.g. "advance")
            start_page: First page to request
            limit: Optional cap on the number of records returned

        Returns:
            All records, in page order
        """
        records: list[dict] = []
        page = start_page
        logger.info(f"Fetching all {entity_type} records from OrgMeter")

        while True:
            items = await self.fetch_entity_page(entity_type, page)
            if not items:
                break

            if limit is not None:
                remaining = limit - len(records)
                records.extend(items[:remaining])
                if len(records) >= limit:
                    logger.info(f"Reached limit of {limit} {entity_type} records")
                    break
            else:
                records.extend(items)

            page += 1
            await self.delay(self.request_delay)

        logger.info(f"Fetched {len(records)} {entity_type} records from {page - start_page} pages")
        return records

    async def fetch_entity_by_id(self, entity_type: str, entity_id: str | int) -> dict:
        logger.debug(f"Fetching {entity_type} with ID: {entity_id}")
        return await self.fetch_data(f"/{entity_type}/{entity_id}")

    async def fetch_one_sub_entity(
        self,
        entity_type: str,
        entity_id: str | int,
        sub_entity_type: str,
        page: int = 1,
    ) -> Any:
        return await self.fetch_data(f"/{entity_type}/{entity_id}/{sub_entity_type}", {"page": page})

    async def fetch_sub_entity_page(
        self,
        entity_type: str,
        entity_id: str | int,
        sub_entity_type: str,
        page: int = 1,
    ) -> Any:
        return await self.fetch_one_sub_entity(entity_type, entity_id, sub_entity_type, page)

    async def fetch_all_sub_entities(
        self,
        entity_type: str,
        entity_id: str | int,
        sub_entity_type: str,
        start_page: int = 1,
        limit: int | None = None,
    ) -> list[dict]:
        """Fetch every page of ``/{entity}/{id}/{sub_entity}``.

        A single object response (one record with an id) is treated as the
        only item and stops pagination.
        """
        records: list[dict] = []
        page = start_page

        while True:
            body = await self.fetch_sub_entity_page(entity_type, entity_id, sub_entity_type, page)

            single = False
            if isinstance(body, list):
                items = body
            elif isinstance(body, dict) and isinstance(body.get("data"), list):
                items = body["data"]
            elif isinstance(body, dict) and (body.get("id") or body.get("_id")):
                items = [body]
                single = True
            else:
                items = []

            if not items:
                break

            if limit is not None:
                remaining = limit - len(records)
                if remaining <= 0:
                    break
                records.extend(items[:remaining])
            else:
                records.extend(items)

            if single:
                break
            page += 1
            await self.delay(self.request_delay)

        logger.debug(
            f"Fetched {len(records)} {sub_entity_type} records for {entity_type} {entity_id}"
        )
        return records

    async def get_total_count(self, entity_type: str) -> int:
        """Total number of records for an entity; 0 when it cannot be determined."""
        try:
            first = await self.fetch_data(f"/{entity_type}", {"page": 1})
            if isinstance(first, dict):
                if first.get("total"):
                    return int(first["total"])
                if first.get("count"):
                    return int(first["count"])

            total = 0
            page = 1
            while True:
                items = await self.fetch_entity_page(entity_type, page)
                if not items:
                    break
                total += len(items)
                page += 1
                await self.delay(self.count_delay)
                if page > self.max_count_pages:
                    logger.warning(f"Stopped counting {entity_type} at page {page} for safety")
                    break

            logger.info(f"Total count for {entity_type}: {total}")
            return total
        except (OrgMeterError, TypeError, ValueError) as e:
            logger.error(f"Error getting total count for {entity_type}: {e}")
            return 0

    async def test_connection(self) -> bool:
        try:
            await self.fetch_data("/lender", {"page": 1})
            return True
        except OrgMeterError as e:
            logger.warning(f"OrgMeter connection test failed: {e}")
            return False

    def get_api_info(self) -> dict:
        return {
            "base_url": self.base_url,
            "has_api_key": bool(self.api_key),
            "timeout": self.timeout,
        }
