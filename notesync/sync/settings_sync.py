"""Reconciliation of the single per-user settings record.

Conflicts are detected with the record's version counter: every write names
the version it was based on and is accepted only if that is still current.
Within a merge, keys this client actually changed since its last sync
override the remote values; every other key comes from the remote record.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable

from ..models import ChangeEvent, SettingsRecord, SettingValue
from ..remote.base import RemoteError, Subscription, TransientRemoteError
from ..remote.settings_api import SettingsApi
from ..store.settings_store import SettingsStore
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)


class SettingsSyncOutcome(Enum):
    """Result of one local-change cycle."""

    SKIPPED = "skipped"  # Nothing changed since the last sync
    WRITTEN = "written"  # Local values written on top of the known version
    MERGED = "merged"  # Merged onto a newer remote version, then written
    CREATED = "created"  # First record inserted
    CONFLICT = "conflict"  # Version-checked write rejected
    FAILED = "failed"  # Backend error


class SettingsSyncCoordinator:
    """Keeps a SettingsStore consistent with the remote settings record."""

    def __init__(
        self,
        settings: SettingsStore,
        api: SettingsApi,
        client_id: str,
        debounce_seconds: float = 0.5,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        """Initialize the coordinator.

        Args:
            settings: Local settings values to keep in sync.
            api: Remote settings access.
            client_id: Identity stamped on this client's writes.
            debounce_seconds: Quiet period after a local change before syncing.
            max_retries: Retries for transient backend failures.
            retry_delay: Initial backoff in seconds.
        """
        self.settings = settings
        self.api = api
        self.client_id = client_id
        self.debounce = debounce_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.last_synced: dict[str, SettingValue] = {}
        self.last_version = 0
        self.last_client_id: str | None = None

        self._user_id: str | None = None
        self._initial_sync_done = False
        self._needs_insert = False
        self._applying_remote = False
        self._debounce_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._subscription: Subscription | None = None

    @property
    def initialized(self) -> bool:
        return self._initial_sync_done

    async def _with_retry(self, operation: Callable[[], Any]) -> Any:
        return await retry_with_backoff(
            operation,
            retries=self.max_retries,
            delay=self.retry_delay,
            retry_on=(TransientRemoteError,),
        )

    # ==================== Lifecycle ====================

    async def start(self, user_id: str, subscribe: bool = True) -> None:
        """Load the remote record and begin watching both sides."""
        self._user_id = user_id
        await self.load(user_id)
        self.settings.add_listener(self._on_local_change)
        if subscribe:
            self._subscription = await self.api.backend.subscribe(
                self.api.table, user_id, self.handle_remote_change
            )

    async def stop(self) -> None:
        self.settings.remove_listener(self._on_local_change)
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None
        if self._subscription is not None:
            await self.api.backend.unsubscribe(self._subscription)
            self._subscription = None
        await self.settle()
        self._user_id = None
        self._initial_sync_done = False
        self._needs_insert = False
        self.last_synced = {}
        self.last_version = 0
        self.last_client_id = None

    async def settle(self) -> None:
        """Wait for in-flight sync cycles to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== Triggers ====================

    async def load(self, user_id: str) -> bool:
        """Initial load: adopt the remote record, or create it from local values.

        Returns:
            True once a baseline is established.
        """
        self._user_id = user_id
        try:
            remote = await self._with_retry(lambda: self.api.fetch(user_id))
        except RemoteError as e:
            logger.warning(f"Could not load remote settings: {e}")
            return False

        if remote is not None:
            self._adopt(remote)
        elif not await self._insert_local(user_id):
            # Local defaults stay pending until the next change cycle
            self._initial_sync_done = True
            return False

        self._initial_sync_done = True
        return True

    def _on_local_change(self, values: dict[str, SettingValue]) -> None:
        if self._applying_remote or self._user_id is None:
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = self._spawn(self._debounced())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce)
        # Past this point a newer change must not cancel the write
        self._debounce_task = None
        await self.sync_local_changes()

    async def sync_local_changes(self) -> SettingsSyncOutcome:
        """One local-change cycle: compare, fetch, merge if needed, write."""
        user_id = self._user_id
        if user_id is None:
            return SettingsSyncOutcome.SKIPPED
        if not self._initial_sync_done and not await self.load(user_id):
            return SettingsSyncOutcome.FAILED

        current = self.settings.values()
        if current == self.last_synced and not self._needs_insert:
            return SettingsSyncOutcome.SKIPPED

        try:
            remote = await self._with_retry(lambda: self.api.fetch(user_id))
            if remote is None:
                if await self._insert_local(user_id):
                    return SettingsSyncOutcome.CREATED
                return SettingsSyncOutcome.FAILED

            if remote.version > self.last_version:
                # A concurrent writer won; keep only keys changed locally
                merged = dict(remote.settings)
                for key, value in current.items():
                    if self.last_synced.get(key) != value:
                        merged[key] = value
                expected = remote.version
                outcome = SettingsSyncOutcome.MERGED
            else:
                merged = current
                expected = self.last_version
                outcome = SettingsSyncOutcome.WRITTEN

            accepted = await self._with_retry(
                lambda: self.api.update_with_version(
                    user_id, merged, expected, self.client_id
                )
            )
        except RemoteError as e:
            logger.error(f"Settings upload failed: {e}")
            return SettingsSyncOutcome.FAILED

        if not accepted:
            logger.warning(
                f"Settings version conflict at v{expected}; "
                f"will retry on the next change"
            )
            return SettingsSyncOutcome.CONFLICT

        self.last_version = expected + 1
        self.last_client_id = self.client_id
        self.last_synced = dict(merged)
        if merged != current:
            self._apply_remote_values(merged)
        logger.info(f"Settings written at v{self.last_version} ({outcome.value})")
        return outcome

    async def handle_remote_change(self, event: ChangeEvent | None = None) -> bool:
        """React to a change notification for the settings record.

        Returns:
            True if remote values were adopted, False if ignored.
        """
        user_id = self._user_id
        if user_id is None:
            return False
        try:
            remote = await self._with_retry(lambda: self.api.fetch(user_id))
        except RemoteError as e:
            logger.warning(f"Could not refetch settings after change event: {e}")
            return False

        if remote is None:
            return False
        if remote.client_id == self.client_id:
            logger.debug(f"Ignoring echo of own settings write v{remote.version}")
            return False

        self._adopt(remote)
        logger.info(f"Adopted remote settings v{remote.version} from {remote.client_id}")
        return True

    # ==================== Helpers ====================

    async def _insert_local(self, user_id: str) -> bool:
        values = self.settings.values()
        try:
            await self._with_retry(
                lambda: self.api.insert_default(user_id, values, self.client_id)
            )
        except RemoteError as e:
            logger.warning(f"Could not create settings record: {e}")
            self._needs_insert = True
            return False

        self._needs_insert = False
        self.last_version = 1
        self.last_client_id = self.client_id
        self.last_synced = dict(values)
        return True

    def _adopt(self, remote: SettingsRecord) -> None:
        self.last_version = remote.version
        self.last_client_id = remote.client_id
        self.last_synced = dict(remote.settings)
        self._apply_remote_values(remote.settings)

    def _apply_remote_values(self, values: dict[str, SettingValue]) -> None:
        # Listener sees the flag and does not schedule an upload
        self._applying_remote = True
        try:
            self.settings.replace_values(values)
        finally:
            self._applying_remote = False
