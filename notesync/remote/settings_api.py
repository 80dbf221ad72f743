"""Access to the per-user settings record with optimistic concurrency."""

import logging
from typing import Any

from ..models import SettingsRecord, SettingValue, now_iso
from .base import RemoteBackend

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "settings"


def row_to_record(row: dict[str, Any]) -> SettingsRecord:
    return SettingsRecord(
        settings=dict(row.get("settings") or {}),
        version=int(row.get("version") or 0),
        client_id=row.get("client_id"),
        updated_at=row.get("updated_at"),
    )


class SettingsApi:
    """Fetch, create and version-checked update of one user's settings row."""

    def __init__(self, backend: RemoteBackend, table: str = SETTINGS_TABLE):
        self.backend = backend
        self.table = table

    async def fetch(self, user_id: str) -> SettingsRecord | None:
        """Fetch the user's settings record, or None if none exists."""
        rows = await self.backend.select(self.table, user_id)
        if not rows:
            return None
        return row_to_record(rows[0])

    async def insert_default(
        self,
        user_id: str,
        settings: dict[str, SettingValue],
        client_id: str,
    ) -> None:
        """Create the first settings record for a user at version 1."""
        await self.backend.insert(
            self.table,
            {
                "user_id": user_id,
                "settings": dict(settings),
                "version": 1,
                "client_id": client_id,
                "updated_at": now_iso(),
            },
        )
        logger.info(f"Created settings record for {user_id}")

    async def update_with_version(
        self,
        user_id: str,
        settings: dict[str, SettingValue],
        expected_version: int,
        client_id: str,
    ) -> bool:
        """Write settings only if the stored version is still expected_version.

        On success the stored version becomes expected_version + 1.

        Returns:
            True if the write was accepted, False on version mismatch.
        """
        return await self.backend.update_if_version(
            self.table,
            user_id,
            expected_version,
            {
                "settings": dict(settings),
                "version": expected_version + 1,
                "client_id": client_id,
                "updated_at": now_iso(),
            },
        )
