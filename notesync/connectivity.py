"""Connectivity state and online-transition notifications."""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

OnlineListener = Callable[[], Awaitable[None] | None]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """Tracks whether the client is online and announces reconnects.

    Listeners run once per offline -> online transition. State can be set
    directly (e.g. from an OS network event) or by a background probe loop.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[OnlineListener] = []
        self._pending: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: OnlineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: OnlineListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool) -> None:
        """Record connectivity; fire listeners if this is a reconnect."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Network online")
            self._fire()
        elif was_online and not online:
            logger.warning("Network offline")

    def _fire(self) -> None:
        for listener in list(self._listeners):
            result = listener()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Online listener failed: {task.exception()}")

    async def settle(self) -> None:
        """Wait for listeners started by the last transition."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def start(self, probe: Probe, interval_seconds: float = 30.0) -> None:
        """Start polling probe() in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(probe, interval_seconds))
        logger.info(f"Connectivity probe started (interval={interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.settle()

    async def _run_loop(self, probe: Probe, interval_seconds: float) -> None:
        while self._running:
            try:
                online = await probe()
            except Exception as e:
                logger.debug(f"Connectivity probe failed: {e}")
                online = False
            self.set_online(online)
            await asyncio.sleep(interval_seconds)
