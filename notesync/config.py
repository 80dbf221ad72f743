"""Configuration loading for Notesync."""

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ClientConfig:
    name: str = "notesync-client"
    client_id: str = ""  # Empty means a fresh UUID per process


@dataclass
class BackendConfig:
    kind: str = "memory"  # "memory" or "rest"
    url: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0


@dataclass
class RealtimeConfig:
    """Configuration for the realtime change feed."""

    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    topic_prefix: str = "notesync/changes"
    username: str | None = None
    password: str | None = None
    debounce_ms: int = 100  # Coalescing window for bursts of remote events


@dataclass
class SyncConfig:
    """Configuration for note/folder reconciliation."""

    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    state_db_path: str = "~/.notesync/state.db"
    connectivity_check_interval_seconds: int = 30


@dataclass
class SettingsSyncConfig:
    debounce_ms: int = 500


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    settings: SettingsSyncConfig = field(default_factory=SettingsSyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with NOTESYNC_ prefix."""
    return os.environ.get(f"NOTESYNC_{key}", default)


def _is_truthy(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Client overrides
    if name := _get_env("CLIENT_NAME"):
        config.client.name = name
    if client_id := _get_env("CLIENT_ID"):
        config.client.client_id = client_id

    # Backend overrides
    if kind := _get_env("BACKEND_KIND"):
        config.backend.kind = kind
    if url := _get_env("BACKEND_URL"):
        config.backend.url = url
    if api_key := _get_env("BACKEND_API_KEY"):
        config.backend.api_key = api_key
    if timeout := _get_env("BACKEND_TIMEOUT"):
        config.backend.timeout_seconds = float(timeout)

    # Realtime overrides
    if enabled := _get_env("REALTIME_ENABLED"):
        config.realtime.enabled = _is_truthy(enabled)
    if broker := _get_env("REALTIME_BROKER"):
        config.realtime.broker = broker
    if port := _get_env("REALTIME_PORT"):
        config.realtime.port = int(port)
    if username := _get_env("REALTIME_USERNAME"):
        config.realtime.username = username
    if password := _get_env("REALTIME_PASSWORD"):
        config.realtime.password = password

    # Sync overrides
    if attempts := _get_env("SYNC_RETRY_MAX_ATTEMPTS"):
        config.sync.retry_max_attempts = int(attempts)
    if db_path := _get_env("SYNC_STATE_DB_PATH"):
        config.sync.state_db_path = db_path

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    name=client_data.get("name", config.client.name),
                    client_id=client_data.get("client_id", config.client.client_id),
                )

            if "backend" in data:
                backend_data = data["backend"]
                config.backend = BackendConfig(
                    kind=backend_data.get("kind", config.backend.kind),
                    url=backend_data.get("url", config.backend.url),
                    api_key=backend_data.get("api_key", config.backend.api_key),
                    timeout_seconds=backend_data.get(
                        "timeout_seconds", config.backend.timeout_seconds
                    ),
                )

            if "realtime" in data:
                rt_data = data["realtime"]
                config.realtime = RealtimeConfig(
                    enabled=rt_data.get("enabled", config.realtime.enabled),
                    broker=rt_data.get("broker", config.realtime.broker),
                    port=rt_data.get("port", config.realtime.port),
                    topic_prefix=rt_data.get(
                        "topic_prefix", config.realtime.topic_prefix
                    ),
                    username=rt_data.get("username"),
                    password=rt_data.get("password"),
                    debounce_ms=rt_data.get("debounce_ms", config.realtime.debounce_ms),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                    retry_base_delay_seconds=sync_data.get(
                        "retry_base_delay_seconds",
                        config.sync.retry_base_delay_seconds,
                    ),
                    state_db_path=sync_data.get(
                        "state_db_path", config.sync.state_db_path
                    ),
                    connectivity_check_interval_seconds=sync_data.get(
                        "connectivity_check_interval_seconds",
                        config.sync.connectivity_check_interval_seconds,
                    ),
                )

            if "settings" in data:
                config.settings = SettingsSyncConfig(
                    debounce_ms=data["settings"].get(
                        "debounce_ms", config.settings.debounce_ms
                    ),
                )

    config = _apply_env_overrides(config)

    # Each process gets its own identity unless one was pinned
    if not config.client.client_id:
        config.client.client_id = str(uuid.uuid4())

    return config
