"""Freshservice REST v2 client with paging and 429 backoff."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from helpdesk_sync.core.config import settings
from helpdesk_sync.core.exceptions import ConfigurationError, ExternalAPIError, HelpdeskSyncException, RateLimitExceeded
from helpdesk_sync.integrations.freshservice.cancellation import CancelToken, check
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy
from helpdesk_sync.integrations.freshservice.schemas import (
    ExternalActivity,
    ExternalAgent,
    ExternalCsatResponse,
    ExternalRequester,
    ExternalTicket,
    envelope_key,
    item_schema,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
Sleep = Callable[[float], Awaitable[None]]

TICKET_INCLUDE = "requester,stats"


def _base_url(domain: str) -> str:
    host = domain.strip().removeprefix("https://").rstrip("/")
    if ".freshservice.com" not in host:
        host = f"{host}.freshservice.com"
    return f"https://{host}/api/v2"


def _error_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        description = payload.get("description") or payload.get("message")
        if description:
            return str(description)
    return f"HTTP {response.status_code}"


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except ValueError:
        return None


def format_since(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FreshserviceClient:
    def __init__(
        self,
        domain: str,
        api_key: str,
        *,
        pacing: PacingPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        timeout: float = 30.0,
        cancel_token: CancelToken | None = None,
    ) -> None:
        if not (domain or "").strip() or not (api_key or "").strip():
            raise ConfigurationError(
                "Freshservice domain and API key are required",
                details={"domain_set": bool((domain or "").strip()), "api_key_set": bool((api_key or "").strip())},
            )
        self.base_url = _base_url(domain)
        self.pacing = pacing or PacingPolicy()
        self.cancel_token = cancel_token
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(api_key, "X"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, **kwargs: Any) -> FreshserviceClient:
        kwargs.setdefault("pacing", settings.pacing_policy())
        kwargs.setdefault("timeout", settings.FRESHSERVICE_TIMEOUT_SECONDS)
        return cls(settings.FRESHSERVICE_DOMAIN, settings.FRESHSERVICE_API_KEY, **kwargs)

    async def __aenter__(self) -> FreshserviceClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_with_retry(self, resource: str, params: dict[str, Any] | None = None) -> httpx.Response:
        attempts = self.pacing.retry_attempts
        for attempt in range(1, attempts + 1):
            check(self.cancel_token)
            try:
                response = await self._http.get(resource, params=params)
            except httpx.HTTPError as exc:
                raise ExternalAPIError(resource, str(exc) or exc.__class__.__name__) from exc

            if response.status_code == 429:
                retry_after = _retry_after(response)
                if attempt >= attempts:
                    raise RateLimitExceeded(resource, attempts=attempts, retry_after=retry_after)
                delay = min(max(self.pacing.backoff_delay(attempt), retry_after or 0), self.pacing.retry_max_delay)
                logger.warning(
                    "Rate limit hit (429) on %s page %s. Retrying in %.1fs (attempt %s/%s)",
                    resource,
                    (params or {}).get("page", 1),
                    delay,
                    attempt,
                    attempts,
                )
                await self._sleep(delay)
                continue

            if response.status_code >= 400:
                raise ExternalAPIError(resource, _error_description(response), upstream_status=response.status_code)
            return response

        raise RateLimitExceeded(resource, attempts=attempts)

    @staticmethod
    def _json(resource: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalAPIError(resource, "response body is not JSON", upstream_status=response.status_code) from exc
        if not isinstance(payload, dict):
            raise ExternalAPIError(resource, "unexpected response shape", upstream_status=response.status_code)
        return payload

    @staticmethod
    def _parse_items(resource: str, raw_items: list[Any]) -> list[BaseModel]:
        schema = item_schema(resource)
        if schema is None:
            return [item for item in raw_items if isinstance(item, dict)]
        items: list[BaseModel] = []
        for raw in raw_items:
            try:
                items.append(schema.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping invalid %s item: %s", resource, exc.errors()[:1])
        return items

    async def iter_pages(
        self,
        resource: str,
        params: dict[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AsyncIterator[list[BaseModel]]:
        """Yield one parsed page at a time until a short or empty page comes back."""
        key = envelope_key(resource)
        page_size = self.pacing.page_size
        page = 1
        seen = 0
        while True:
            response = await self._get_with_retry(resource, {**(params or {}), "page": page, "per_page": page_size})
            payload = self._json(resource, response)
            raw_items = payload.get(key) if key else None
            if not isinstance(raw_items, list) or not raw_items:
                break

            items = self._parse_items(resource, raw_items)
            seen += len(items)
            yield items

            if page % self.pacing.progress_every_pages == 0:
                logger.info("Fetching %s: %s items so far (page %s)", resource, seen, page)
                if on_progress is not None:
                    on_progress(page, seen)

            if len(raw_items) < page_size:
                break
            page += 1
            check(self.cancel_token)
            await self._sleep(self.pacing.page_delay)

        logger.info("Fetched %s items from %s", seen, resource)

    async def fetch_all_pages(
        self,
        resource: str,
        params: dict[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[BaseModel]:
        results: list[BaseModel] = []
        async for items in self.iter_pages(resource, params, on_progress):
            results.extend(items)
        return results

    async def fetch_tickets(
        self,
        *,
        updated_since: dt.datetime | None = None,
        include: str | None = TICKET_INCLUDE,
        on_progress: ProgressCallback | None = None,
    ) -> list[ExternalTicket]:
        params: dict[str, Any] = {}
        if updated_since is not None:
            params["updated_since"] = format_since(updated_since)
        if include:
            params["include"] = include
        logger.info("Fetching tickets from Freshservice (updated_since=%s)", params.get("updated_since"))
        return await self.fetch_all_pages("/tickets", params, on_progress)  # type: ignore[return-value]

    async def fetch_agents(self, *, workspace_id: int | None = None) -> list[ExternalAgent]:
        params: dict[str, Any] = {}
        if workspace_id is not None:
            params["workspace_id"] = workspace_id
        return await self.fetch_all_pages("/agents", params)  # type: ignore[return-value]

    async def fetch_ticket_activities(self, ticket_id: int) -> list[ExternalActivity]:
        resource = f"/tickets/{ticket_id}/activities"
        payload = self._json(resource, await self._get_with_retry(resource))
        raw_items = payload.get("activities")
        if not isinstance(raw_items, list):
            return []
        return self._parse_items(resource, raw_items)  # type: ignore[return-value]

    async def fetch_requester(self, requester_id: int) -> ExternalRequester | None:
        resource = f"/requesters/{requester_id}"
        payload = self._json(resource, await self._get_with_retry(resource))
        raw = payload.get("requester")
        if not isinstance(raw, dict):
            return None
        try:
            return ExternalRequester.model_validate(raw)
        except ValidationError as exc:
            raise ExternalAPIError(resource, f"invalid requester payload: {exc.errors()[:1]}") from exc

    async def fetch_csat_response(self, ticket_id: int) -> ExternalCsatResponse | None:
        resource = f"/tickets/{ticket_id}/csat_response"
        try:
            response = await self._get_with_retry(resource)
        except ExternalAPIError as exc:
            # 404 means the requester never answered the survey.
            if exc.upstream_status == 404:
                return None
            raise
        raw = self._json(resource, response).get("csat_response")
        if not isinstance(raw, dict):
            return None
        try:
            return ExternalCsatResponse.model_validate(raw)
        except ValidationError as exc:
            raise ExternalAPIError(resource, f"invalid csat payload: {exc.errors()[:1]}") from exc

    async def test_connection(self) -> bool:
        try:
            await self._get_with_retry("/agents", {"per_page": 1})
        except HelpdeskSyncException as exc:
            logger.error("Freshservice API connection failed: %s", exc.message)
            return False
        logger.info("Freshservice API connection successful")
        return True

    async def rate_limit_info(self) -> dict[str, int | None] | None:
        try:
            response = await self._get_with_retry("/agents", {"per_page": 1})
        except HelpdeskSyncException as exc:
            logger.error("Error fetching rate limit info: %s", exc.message)
            return None

        def header(name: str) -> int | None:
            value = response.headers.get(name)
            try:
                return int(value) if value is not None else None
            except ValueError:
                return None

        return {
            "limit": header("x-ratelimit-total"),
            "remaining": header("x-ratelimit-remaining"),
            "used_current_request": header("x-ratelimit-used-currentrequest"),
        }
