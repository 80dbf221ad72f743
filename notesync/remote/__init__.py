"""Remote backends and change feeds.

Provides the backend interface used by the sync engine, an in-memory
backend for tests and local use, and an HTTP backend whose realtime
changes arrive over MQTT.
"""

from .base import (
    OfflineError,
    RemoteBackend,
    RemoteError,
    RemoteRejectedError,
    Subscription,
    TransientRemoteError,
)
from .memory import InMemoryBackend
from .mqtt_feed import MQTTChangeFeed
from .rest import RestBackend
from .settings_api import SettingsApi

__all__ = [
    "OfflineError",
    "RemoteBackend",
    "RemoteError",
    "RemoteRejectedError",
    "Subscription",
    "TransientRemoteError",
    "InMemoryBackend",
    "MQTTChangeFeed",
    "RestBackend",
    "SettingsApi",
]
