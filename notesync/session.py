"""Wiring of the sync engine for one client process."""

import logging
from typing import Any

from .config import Config
from .connectivity import ConnectivityMonitor
from .remote.base import RemoteBackend
from .remote.memory import InMemoryBackend
from .remote.mqtt_feed import MQTTChangeFeed
from .remote.rest import RestBackend
from .remote.settings_api import SettingsApi
from .store.note_store import NoteStore
from .store.persistence import StateStorage
from .store.settings_store import SettingsStore
from .sync.offline_queue import FlushResult
from .sync.settings_sync import SettingsSyncCoordinator

logger = logging.getLogger(__name__)


def build_backend(config: Config) -> RemoteBackend:
    """Create the backend named by config.backend.kind."""
    kind = config.backend.kind
    if kind == "memory":
        return InMemoryBackend()
    if kind == "rest":
        if not config.backend.url:
            raise ValueError("backend.url is required for the rest backend")
        feed = MQTTChangeFeed(config.realtime) if config.realtime.enabled else None
        return RestBackend(
            config.backend.url,
            api_key=config.backend.api_key,
            timeout=config.backend.timeout_seconds,
            change_feed=feed,
        )
    raise ValueError(f"Unknown backend kind: {kind}")


class SyncSession:
    """Owns the stores, the coordinator and the connectivity monitor.

    Signing in hydrates local state, replays queued mutations, reconciles
    notes and folders, and opens realtime feeds. Every offline -> online
    transition replays the offline queue once.
    """

    def __init__(
        self,
        config: Config,
        backend: RemoteBackend | None = None,
        storage: StateStorage | None = None,
        seed_default_note: bool = True,
    ):
        """Initialize the session.

        Args:
            config: Loaded configuration.
            backend: Backend to use instead of building one from config.
            storage: Persisted state; defaults to config.sync.state_db_path.
            seed_default_note: Start empty stores with one untitled note.
        """
        self.config = config
        self.backend = backend or build_backend(config)
        self.storage = storage or StateStorage(config.sync.state_db_path)
        self.connectivity = ConnectivityMonitor()
        self.user_id: str | None = None

        sync = config.sync
        self.notes = NoteStore(
            self.backend,
            storage=self.storage,
            connectivity=self.connectivity,
            max_retries=sync.retry_max_attempts,
            retry_delay=sync.retry_base_delay_seconds,
            debounce_seconds=config.realtime.debounce_ms / 1000,
            seed_default_note=seed_default_note,
        )

        self.settings = SettingsStore()
        saved = self.storage.load_settings()
        if saved:
            self.settings.replace_values(saved)
        self.settings.add_listener(self.storage.save_settings)

        self.settings_sync = SettingsSyncCoordinator(
            self.settings,
            SettingsApi(self.backend),
            client_id=config.client.client_id,
            debounce_seconds=config.settings.debounce_ms / 1000,
            max_retries=sync.retry_max_attempts,
            retry_delay=sync.retry_base_delay_seconds,
        )

        self.connectivity.add_listener(self._on_online)

    @property
    def signed_in(self) -> bool:
        return self.user_id is not None

    async def sign_in(self, user_id: str) -> bool:
        """Start syncing for user_id.

        Returns:
            True if the initial note/folder sync succeeded.
        """
        if not self.notes.hydrated:
            self.notes.hydrate()
        self.user_id = user_id
        logger.info(f"Signing in {user_id} as client {self.config.client.client_id}")

        # Replay queued mutations first so a queued delete is not pulled back
        if self.notes.queue:
            await self.notes.flush_queue(user_id)

        if self.config.realtime.enabled:
            try:
                await self.notes.enable_realtime(user_id)
            except Exception as e:
                logger.warning(f"Realtime unavailable, continuing without it: {e}")

        synced = await self.notes.sync_all(user_id)
        await self.settings_sync.start(user_id, subscribe=self.config.realtime.enabled)
        return synced

    async def sign_out(self) -> None:
        """Stop syncing and return local state to defaults."""
        if self.user_id is None:
            return
        logger.info(f"Signing out {self.user_id}")
        await self.settings_sync.stop()
        await self.notes.reset()
        self.user_id = None

    async def _on_online(self) -> None:
        if self.user_id is not None:
            await self.flush()

    async def flush(self) -> FlushResult | None:
        """Replay queued mutations for the signed-in user."""
        if self.user_id is None:
            return None
        result = await self.notes.flush_queue(self.user_id)
        logger.info(
            f"Flush {result.status.value}: {result.flushed} sent, "
            f"{result.remaining} remaining"
        )
        return result

    async def sync(self) -> bool:
        if self.user_id is None:
            return False
        return await self.notes.sync_all(self.user_id)

    async def start_monitoring(self) -> None:
        """Poll the backend to detect connectivity changes."""
        await self.connectivity.start(
            self.backend.ping,
            self.config.sync.connectivity_check_interval_seconds,
        )

    async def settle(self) -> None:
        """Wait for background confirmations, listeners and sync cycles."""
        await self.connectivity.settle()
        await self.notes.settle()
        await self.settings_sync.settle()

    async def close(self) -> None:
        await self.connectivity.stop()
        await self.notes.settle()
        await self.settings_sync.stop()
        await self.notes.disable_realtime()
        await self.backend.close()
        self.storage.close()

    def status(self) -> dict[str, Any]:
        return {
            "client": {
                "name": self.config.client.name,
                "client_id": self.config.client.client_id,
            },
            "user_id": self.user_id,
            "online": self.connectivity.is_online,
            "store": self.notes.status(),
            "settings": {
                "values": self.settings.values(),
                "version": self.settings_sync.last_version,
                "initialized": self.settings_sync.initialized,
            },
        }
