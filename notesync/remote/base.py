"""Remote backend contract and the change-feed subscription handle."""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from ..models import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


class RemoteError(Exception):
    """Base class for backend failures."""


class OfflineError(RemoteError):
    """The backend could not be reached at all."""


class TransientRemoteError(RemoteError):
    """Timeouts and server-side errors that may succeed on retry."""


class RemoteRejectedError(RemoteError):
    """The backend refused the request (invalid data, permissions)."""


class Subscription:
    """A live change feed for one table scoped to one user.

    Events are handed to the callback one at a time, in the order they were
    delivered, by a consumer task reading an internal queue. Callback errors
    are logged and the event is dropped.
    """

    def __init__(self, table: str, user_id: str, callback: ChangeCallback):
        self.table = table
        self.user_id = user_id
        self._callback = callback
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._task: asyncio.Task | None = asyncio.create_task(self._consume())
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ChangeEvent) -> None:
        """Queue an event for the callback. Must run on the subscription's loop."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    def deliver_threadsafe(self, event: ChangeEvent) -> None:
        """Queue an event from a foreign thread (e.g. a network client loop)."""
        if self._closed:
            return
        self._loop.call_soon_threadsafe(self.deliver, event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self._callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Change callback failed for {self.table} event "
                    f"{event.type.value} {event.record_id}: {e}",
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every delivered event has been handled."""
        if not self._closed:
            await self._queue.join()

    async def close(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug(f"Subscription to {self.table} for {self.user_id} closed")


class RemoteBackend(ABC):
    """Row CRUD plus a change feed per collection, scoped by owning user."""

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> None:
        """Insert a single row."""
        pass

    @abstractmethod
    async def upsert(self, table: str, rows: list[dict[str, Any]]) -> None:
        """Insert or overwrite rows keyed by their id."""
        pass

    @abstractmethod
    async def update(
        self, table: str, user_id: str, record_id: str, values: dict[str, Any]
    ) -> int:
        """Update one owned row by id.

        Returns:
            Number of rows affected.
        """
        pass

    @abstractmethod
    async def delete(self, table: str, user_id: str, record_ids: list[str]) -> int:
        """Delete owned rows by id.

        Returns:
            Number of rows deleted.
        """
        pass

    @abstractmethod
    async def select(
        self,
        table: str,
        user_id: str,
        updated_after: str | None = None,
        column: str = "updated_at",
    ) -> list[dict[str, Any]]:
        """Select owned rows, optionally only those with column > updated_after."""
        pass

    @abstractmethod
    async def update_if_version(
        self,
        table: str,
        user_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        """Update the owner's row only if its version equals expected_version.

        Returns:
            True if a row was updated, False on version mismatch.
        """
        pass

    @abstractmethod
    async def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        """Open a change feed for the user's rows in table."""
        pass

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Release a change feed. Safe on an already-closed handle."""
        await subscription.close()

    @abstractmethod
    async def ping(self) -> bool:
        """Check whether the backend is reachable."""
        pass

    async def close(self) -> None:
        """Release any network resources."""
        pass
