"""In-process backend implementing the full remote contract.

Used for local-only operation and as the reference backend in tests. Every
write emits a change event to matching subscribers, and the ``online`` switch
simulates losing connectivity.
"""

import copy
import logging
from typing import Any

from ..models import ChangeEvent, ChangeType, now_iso
from .base import (
    ChangeCallback,
    OfflineError,
    RemoteBackend,
    RemoteRejectedError,
    Subscription,
)

logger = logging.getLogger(__name__)

# Tables keyed by owner rather than by row id
OWNER_KEYED_TABLES = frozenset({"settings"})


class InMemoryBackend(RemoteBackend):
    """Dictionary-backed backend with a live change feed."""

    def __init__(self, online: bool = True):
        self.online = online
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: list[Subscription] = []

    def _check_online(self) -> None:
        if not self.online:
            raise OfflineError("Backend unreachable (offline)")

    def _rows(self, table: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _key(self, table: str, row: dict[str, Any]) -> str:
        key_column = "user_id" if table in OWNER_KEYED_TABLES else "id"
        key = row.get(key_column)
        if key is None:
            raise RemoteRejectedError(f"Row for {table} is missing {key_column}")
        return key

    def _emit(
        self,
        table: str,
        change_type: ChangeType,
        new: dict[str, Any] | None,
        old: dict[str, Any] | None,
    ) -> None:
        owner = (new or old or {}).get("user_id")
        event_ts = now_iso()
        for sub in list(self._subscriptions):
            if sub.closed:
                self._subscriptions.remove(sub)
                continue
            if sub.table == table and sub.user_id == owner:
                sub.deliver(
                    ChangeEvent(
                        table=table,
                        type=change_type,
                        new=copy.deepcopy(new),
                        old=copy.deepcopy(old),
                        commit_timestamp=event_ts,
                    )
                )

    def rows(self, table: str, user_id: str | None = None) -> list[dict[str, Any]]:
        """Snapshot of stored rows, for inspection."""
        return [
            copy.deepcopy(row)
            for row in self._rows(table).values()
            if user_id is None or row.get("user_id") == user_id
        ]

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        row = self._rows(table).get(key)
        return copy.deepcopy(row) if row is not None else None

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        self._check_online()
        rows = self._rows(table)
        key = self._key(table, row)
        if key in rows:
            raise RemoteRejectedError(f"Duplicate key {key} in {table}")
        rows[key] = copy.deepcopy(row)
        self._emit(table, ChangeType.INSERT, rows[key], None)

    async def upsert(self, table: str, rows: list[dict[str, Any]]) -> None:
        self._check_online()
        stored = self._rows(table)
        for row in rows:
            key = self._key(table, row)
            old = stored.get(key)
            stored[key] = copy.deepcopy(row)
            self._emit(
                table,
                ChangeType.UPDATE if old is not None else ChangeType.INSERT,
                stored[key],
                old,
            )

    async def update(
        self, table: str, user_id: str, record_id: str, values: dict[str, Any]
    ) -> int:
        self._check_online()
        stored = self._rows(table)
        old = stored.get(record_id)
        if old is None or old.get("user_id") != user_id:
            return 0
        new = {**old, **copy.deepcopy(values)}
        stored[record_id] = new
        self._emit(table, ChangeType.UPDATE, new, old)
        return 1

    async def delete(self, table: str, user_id: str, record_ids: list[str]) -> int:
        self._check_online()
        stored = self._rows(table)
        deleted = 0
        for record_id in record_ids:
            old = stored.get(record_id)
            if old is None or old.get("user_id") != user_id:
                continue
            del stored[record_id]
            deleted += 1
            self._emit(table, ChangeType.DELETE, None, old)
        return deleted

    async def select(
        self,
        table: str,
        user_id: str,
        updated_after: str | None = None,
        column: str = "updated_at",
    ) -> list[dict[str, Any]]:
        self._check_online()
        result = []
        for row in self._rows(table).values():
            if row.get("user_id") != user_id:
                continue
            if updated_after is not None and not (
                row.get(column) is not None and row[column] > updated_after
            ):
                continue
            result.append(copy.deepcopy(row))
        return result

    async def update_if_version(
        self,
        table: str,
        user_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        self._check_online()
        stored = self._rows(table)
        old = stored.get(user_id)
        if old is None or old.get("version") != expected_version:
            return False
        new = {**old, **copy.deepcopy(values)}
        stored[user_id] = new
        self._emit(table, ChangeType.UPDATE, new, old)
        return True

    async def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        subscription = Subscription(table, user_id, callback)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {table} changes for {user_id}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        await subscription.close()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def ping(self) -> bool:
        return self.online

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.close()
        self._subscriptions.clear()
