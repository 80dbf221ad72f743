"""Bidirectional reconciliation of one remote collection.

Push every local item as an upsert, pull the user's remote rows (optionally
only those changed since a cursor), then union the two with remote items
taking precedence by identifier.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from ..remote.base import ChangeCallback, RemoteBackend, Subscription, TransientRemoteError
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CollectionSpec(Generic[T]):
    """How one entity type maps onto a remote table."""

    table: str
    map_row: Callable[[dict[str, Any]], T]
    map_local: Callable[[T, str], dict[str, Any]]
    updated_at_column: str | None = None
    key: Callable[[T], str] = lambda item: item.id  # type: ignore[attr-defined]


class SyncManager(Generic[T]):
    """Push/pull reconciliation and change-feed access for one collection."""

    def __init__(
        self,
        backend: RemoteBackend,
        collection: CollectionSpec[T],
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        """Initialize the sync manager.

        Args:
            backend: Remote backend to talk to.
            collection: Table name, mappers and incremental-filter column.
            max_retries: Retries for transient push/pull failures.
            retry_delay: Initial backoff in seconds.
        """
        self.backend = backend
        self.collection = collection
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def table(self) -> str:
        return self.collection.table

    async def _with_retry(self, operation: Callable[[], Any]) -> Any:
        return await retry_with_backoff(
            operation,
            retries=self.max_retries,
            delay=self.retry_delay,
            retry_on=(TransientRemoteError,),
        )

    async def push(self, user_id: str, local_items: list[T]) -> int:
        """Upsert every local item keyed by identifier.

        Returns:
            Number of items pushed.
        """
        if not local_items:
            return 0
        payload = [self.collection.map_local(item, user_id) for item in local_items]
        await self._with_retry(lambda: self.backend.upsert(self.collection.table, payload))
        return len(payload)

    async def pull(self, user_id: str, since: str | None = None) -> list[T]:
        """Fetch the user's remote items, incrementally when a cursor is given."""
        column = self.collection.updated_at_column
        updated_after = since if column else None
        rows = await self._with_retry(
            lambda: self.backend.select(
                self.collection.table,
                user_id,
                updated_after=updated_after,
                column=column or "updated_at",
            )
        )
        return [self.collection.map_row(row) for row in rows]

    async def sync(
        self, user_id: str, local_items: list[T], since: str | None = None
    ) -> list[T]:
        """Push local items, pull remote ones and return their union.

        Remote items win by identifier; local items absent remotely are kept
        as local-only. The result never holds two items with one identifier.

        Args:
            user_id: Owner whose rows are reconciled.
            local_items: Current local collection.
            since: Only pull rows updated after this ISO timestamp.

        Returns:
            Merged collection, remote items first.
        """
        pushed = await self.push(user_id, local_items)
        remote_items = await self.pull(user_id, since)

        merged: dict[str, T] = {}
        for item in remote_items:
            merged[self.collection.key(item)] = item
        local_only = 0
        for item in local_items:
            item_id = self.collection.key(item)
            if item_id not in merged:
                merged[item_id] = item
                local_only += 1

        logger.info(
            f"Synced {self.collection.table}: pushed={pushed}, "
            f"pulled={len(remote_items)}, local_only={local_only}"
        )
        return list(merged.values())

    async def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription:
        """Open the collection's change feed for user_id."""
        return await self.backend.subscribe(self.collection.table, user_id, callback)

    async def unsubscribe(self, subscription: Subscription | None) -> None:
        """Release a change feed; tolerates None and closed handles."""
        if subscription is None:
            return
        await self.backend.unsubscribe(subscription)
