"""Tests for configuration loading."""

import pytest

from notesync.config import Config, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self, monkeypatch):
        """Test defaults without a file."""
        monkeypatch.delenv("NOTESYNC_CLIENT_ID", raising=False)

        config = load_config()

        assert isinstance(config, Config)
        assert config.backend.kind == "memory"
        assert config.sync.retry_max_attempts == 3
        assert config.client.client_id

    def test_each_load_gets_fresh_client_id(self, monkeypatch):
        """Test an unset client id is generated per process."""
        monkeypatch.delenv("NOTESYNC_CLIENT_ID", raising=False)

        assert load_config().client.client_id != load_config().client.client_id

    def test_yaml_sections(self, tmp_path):
        """Test values are read from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
client:
  name: laptop
  client_id: fixed-id
backend:
  kind: rest
  url: https://db.example.com
realtime:
  enabled: false
  debounce_ms: 250
sync:
  retry_max_attempts: 5
settings:
  debounce_ms: 1000
"""
        )

        config = load_config(path)

        assert config.client.name == "laptop"
        assert config.client.client_id == "fixed-id"
        assert config.backend.kind == "rest"
        assert config.backend.url == "https://db.example.com"
        assert config.realtime.enabled is False
        assert config.realtime.debounce_ms == 250
        assert config.sync.retry_max_attempts == 5
        assert config.sync.retry_base_delay_seconds == 0.5
        assert config.settings.debounce_ms == 1000

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test NOTESYNC_ variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("backend:\n  url: https://file.example.com\n")
        monkeypatch.setenv("NOTESYNC_BACKEND_URL", "https://env.example.com")
        monkeypatch.setenv("NOTESYNC_REALTIME_ENABLED", "no")
        monkeypatch.setenv("NOTESYNC_REALTIME_PORT", "8883")
        monkeypatch.setenv("NOTESYNC_SYNC_RETRY_MAX_ATTEMPTS", "1")

        config = load_config(path)

        assert config.backend.url == "https://env.example.com"
        assert config.realtime.enabled is False
        assert config.realtime.port == 8883
        assert config.sync.retry_max_attempts == 1

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing path is not an error."""
        config = load_config(tmp_path / "absent.yaml")

        assert config.backend.kind == "memory"
