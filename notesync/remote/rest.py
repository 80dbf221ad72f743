"""HTTP backend speaking PostgREST conventions over httpx."""

import logging
from typing import Any

import httpx

from .base import (
    ChangeCallback,
    OfflineError,
    RemoteBackend,
    RemoteRejectedError,
    Subscription,
    TransientRemoteError,
)
from .mqtt_feed import MQTTChangeFeed

logger = logging.getLogger(__name__)

# Conflict target per table for upserts
CONFLICT_COLUMNS = {"settings": "user_id"}


class RestBackend(RemoteBackend):
    """Row CRUD against ``{url}/rest/v1/{table}``.

    Realtime subscriptions are served by an optional MQTT change feed.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 30.0,
        change_feed: MQTTChangeFeed | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the backend.

        Args:
            url: Base URL of the backend (e.g., "https://db.example.com").
            api_key: Key sent as ``apikey`` and bearer token.
            timeout: Request timeout in seconds.
            change_feed: Source of realtime events; None disables subscribe.
            transport: Optional httpx transport, used by tests.
        """
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"

        self.url = url.rstrip("/")
        self._feed = change_feed
        self._client = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        """Send a request and map failures onto the remote error taxonomy."""
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"/{table}", params=params, json=json_data, headers=headers
            )
        except httpx.ConnectError as e:
            raise OfflineError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise TransientRemoteError(f"Request error: {e}") from e

        if response.status_code >= 500:
            raise TransientRemoteError(
                f"Server error {response.status_code} on {method} {table}"
            )
        if response.status_code >= 400:
            raise RemoteRejectedError(f"HTTP {response.status_code}: {response.text}")
        return response

    @staticmethod
    def _owned(user_id: str, **filters: str) -> dict[str, str]:
        params = {"user_id": f"eq.{user_id}"}
        params.update(filters)
        return params

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        await self._request("POST", table, json_data=row, prefer="return=minimal")

    async def upsert(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await self._request(
            "POST",
            table,
            params={"on_conflict": CONFLICT_COLUMNS.get(table, "id")},
            json_data=rows,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def update(
        self, table: str, user_id: str, record_id: str, values: dict[str, Any]
    ) -> int:
        response = await self._request(
            "PATCH",
            table,
            params=self._owned(user_id, id=f"eq.{record_id}"),
            json_data=values,
            prefer="return=representation",
        )
        return len(response.json())

    async def delete(self, table: str, user_id: str, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        response = await self._request(
            "DELETE",
            table,
            params=self._owned(user_id, id=f"in.({','.join(record_ids)})"),
            prefer="return=representation",
        )
        return len(response.json())

    async def select(
        self,
        table: str,
        user_id: str,
        updated_after: str | None = None,
        column: str = "updated_at",
    ) -> list[dict[str, Any]]:
        params = self._owned(user_id, select="*")
        if updated_after is not None:
            params[column] = f"gt.{updated_after}"
        response = await self._request("GET", table, params=params)
        return response.json()

    async def update_if_version(
        self,
        table: str,
        user_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        response = await self._request(
            "PATCH",
            table,
            params=self._owned(user_id, version=f"eq.{expected_version}"),
            json_data=values,
            prefer="return=representation",
        )
        return len(response.json()) > 0

    async def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        if self._feed is None:
            raise RemoteRejectedError("Realtime change feed is not configured")
        return await self._feed.subscribe(table, user_id, callback)

    async def unsubscribe(self, subscription: Subscription) -> None:
        if self._feed is None:
            await subscription.close()
            return
        await self._feed.unsubscribe(subscription)

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/")
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async def close(self) -> None:
        if self._feed is not None:
            await self._feed.disconnect()
        await self._client.aclose()
