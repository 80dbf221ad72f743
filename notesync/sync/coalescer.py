"""Debounced coalescing of realtime change events.

Events arrive on a channel; the first event of a burst opens a window, and
when the window closes everything received meanwhile is collapsed to the last
event per record and emitted as one batch.
"""

import asyncio
import logging
from typing import Callable

from ..models import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)

BatchHandler = Callable[[list[ChangeEvent]], None]


def coalesce(events: list[ChangeEvent]) -> list[ChangeEvent]:
    """Collapse a burst to the last event per record.

    A record whose burst starts with INSERT and ends with UPDATE yields the
    insert followed by the update, both carrying the latest row, so a receiver
    that lacks the record still gets it and one that has it still sees the
    update. Events without a record id pass through untouched.
    """
    first_type: dict[object, ChangeType] = {}
    latest: dict[object, ChangeEvent] = {}
    for event in events:
        key: object = event.record_id if event.record_id is not None else object()
        first_type.setdefault(key, event.type)
        latest[key] = event

    batch: list[ChangeEvent] = []
    for key, event in latest.items():
        if first_type[key] == ChangeType.INSERT and event.type == ChangeType.UPDATE:
            batch.append(
                ChangeEvent(
                    table=event.table,
                    type=ChangeType.INSERT,
                    new=event.new,
                    old=None,
                    commit_timestamp=event.commit_timestamp,
                )
            )
        batch.append(event)
    return batch


class EventCoalescer:
    """Queue-with-timer that turns an event stream into coalesced batches."""

    def __init__(self, window_seconds: float, on_batch: BatchHandler, name: str = ""):
        """Initialize the coalescer.

        Args:
            window_seconds: How long a burst is collected before emitting.
            on_batch: Receives each coalesced batch.
            name: Label used in log messages.
        """
        self.window = window_seconds
        self.name = name
        self._on_batch = on_batch
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def push(self, event: ChangeEvent) -> None:
        """Add an event to the current window."""
        if self._task is None:
            self.start()
        self._queue.put_nowait(event)

    async def _collect(self) -> list[ChangeEvent]:
        events = [await self._queue.get()]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.window
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                events.append(await asyncio.wait_for(self._queue.get(), remaining))
            except asyncio.TimeoutError:
                break
        return events

    async def _run(self) -> None:
        while True:
            events = await self._collect()
            batch = coalesce(events)
            try:
                self._on_batch(batch)
                logger.debug(
                    f"{self.name}: applied {len(batch)} of {len(events)} events"
                )
            except Exception as e:
                logger.error(f"{self.name}: batch handler failed: {e}", exc_info=True)
            finally:
                for _ in events:
                    self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every pushed event has been emitted."""
        if self._queue is not None and self._task is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Emit anything still buffered, then stop."""
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._queue = None
