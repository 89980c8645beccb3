"""Thin REST client for collection endpoints.

Collections come back as CacheEntry (via normalize_response), single items as
plain dicts, ready to be returned from a ``send_to_server`` callable.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from listcache.duration import to_seconds
from listcache.errors import ApiError
from listcache.normalize import find_item, normalize_item, normalize_response
from listcache.types import CacheEntry, Duration, Item

if TYPE_CHECKING:
    from listcache.config import Settings

log = structlog.get_logger()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("message", "error"):
            if isinstance(body.get(field), str) and body[field]:
                return body[field]
    return f"HTTP {response.status_code}"


class ApiClient:
    """Async REST client with retrying reads."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        retries: int = 2,
        retry_delay: Duration = "2s",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must not be negative")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
        )
        self._retries = retries
        self._retry_delay = to_seconds(retry_delay)

    @classmethod
    def from_settings(cls, settings: Settings, *, token: str | None = None) -> ApiClient:
        return cls(
            settings.api.base_url,
            token=token,
            timeout=settings.api.timeout_seconds,
            retries=settings.api.retries,
            retry_delay=settings.api.retry_delay,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        response = await self._client.request(method, path, params=params, json=json)
        if not response.is_success:
            raise ApiError(response.status_code, _error_message(response))
        if not response.content:
            return None
        return response.json()

    async def _get_with_retry(self, path: str, params: dict[str, Any] | None) -> Any:
        attempt = 0
        while True:
            try:
                return await self._request("GET", path, params=params)
            except (httpx.TransportError, ApiError) as e:
                retryable = not isinstance(e, ApiError) or e.status_code >= 500
                if not retryable or attempt >= self._retries:
                    raise
                attempt += 1
                log.info(
                    "api_request_retry",
                    path=path,
                    attempt=attempt,
                    remaining=self._retries - attempt,
                    error=str(e),
                )
                await asyncio.sleep(self._retry_delay)

    async def fetch_collection(
        self, path: str, params: dict[str, Any] | None = None
    ) -> CacheEntry:
        """GET a collection endpoint and normalize it."""
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        body = await self._get_with_retry(path, clean or None)
        return normalize_response(body)

    async def fetch_item(self, path: str, item_id: Any) -> Item:
        body = await self._get_with_retry(f"{path.rstrip('/')}/{item_id}", None)
        return normalize_item(body)

    async def update_item(
        self, path: str, item_id: Any, changes: dict[str, Any]
    ) -> Item | None:
        """PUT changes to one item.

        Returns the server's copy of the item when the response includes it,
        so a mutation can merge it instead of refetching the whole list.
        """
        body = await self._request("PUT", f"{path.rstrip('/')}/{item_id}", json=changes)
        return find_item(body)

    async def delete_item(self, path: str, item_id: Any) -> None:
        await self._request("DELETE", f"{path.rstrip('/')}/{item_id}")

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
