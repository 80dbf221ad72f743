"""Sync engine: retry, reconciliation, offline replay and settings sync."""

from .coalescer import EventCoalescer, coalesce
from .offline_queue import FlushResult, FlushStatus, OfflineQueue
from .retry import retry_with_backoff
from .settings_sync import SettingsSyncCoordinator, SettingsSyncOutcome
from .sync_manager import CollectionSpec, SyncManager

__all__ = [
    "EventCoalescer",
    "coalesce",
    "FlushResult",
    "FlushStatus",
    "OfflineQueue",
    "retry_with_backoff",
    "SettingsSyncCoordinator",
    "SettingsSyncOutcome",
    "CollectionSpec",
    "SyncManager",
]
