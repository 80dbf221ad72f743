"""SQLite persistence for the local state snapshot.

Holds what a client needs to start offline: notes, folders, UI state, sync
cursors, the pending-operation queue and settings values.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..models import Folder, Note, PendingOperation, SettingValue, now_iso

logger = logging.getLogger(__name__)

SCHEMA = """
-- Notes in display order (position 0 is the head)
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    position INTEGER NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    folder_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    position INTEGER NOT NULL,
    name TEXT NOT NULL,
    parent_id TEXT,
    created_at TEXT NOT NULL
);

-- Mutations not yet confirmed remotely, replayed by seq
CREATE TABLE IF NOT EXISTS pending_ops (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    args TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_seq ON pending_ops(seq);

-- Small JSON values: active note, expanded folders, cursors, settings
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass
class StoreSnapshot:
    """Everything the note store restores on hydration."""

    notes: list[Note] = field(default_factory=list)
    folders: list[Folder] = field(default_factory=list)
    active_note_id: str | None = None
    expanded_folders: dict[str, bool] = field(default_factory=dict)
    cursors: dict[str, str | None] = field(default_factory=dict)
    next_seq: int = 0
    is_synced: bool = False


class StateStorage:
    """SQLite-backed store for the client's persisted state."""

    def __init__(self, db_path: str | Path):
        """Initialize the storage.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info(f"StateStorage connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _get_state(self, key: str, default: Any = None) -> Any:
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else default

    def _put_state(self, conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )

    # ==================== Snapshot ====================

    def has_snapshot(self) -> bool:
        return self._get_state("saved_at") is not None

    def save_snapshot(self, snapshot: StoreSnapshot) -> None:
        """Replace the stored notes, folders and UI state."""
        conn = self._ensure_connected()
        with conn:
            conn.execute("DELETE FROM notes")
            conn.executemany(
                """
                INSERT INTO notes (
                    id, position, title, content, folder_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (n.id, i, n.title, n.content, n.folder_id, n.created_at, n.updated_at)
                    for i, n in enumerate(snapshot.notes)
                ],
            )
            conn.execute("DELETE FROM folders")
            conn.executemany(
                """
                INSERT INTO folders (id, position, name, parent_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (f.id, i, f.name, f.parent_id, f.created_at)
                    for i, f in enumerate(snapshot.folders)
                ],
            )
            self._put_state(conn, "active_note_id", snapshot.active_note_id)
            self._put_state(conn, "expanded_folders", snapshot.expanded_folders)
            self._put_state(conn, "cursors", snapshot.cursors)
            self._put_state(conn, "next_seq", snapshot.next_seq)
            self._put_state(conn, "is_synced", snapshot.is_synced)
            self._put_state(conn, "saved_at", now_iso())

    def load_snapshot(self) -> StoreSnapshot | None:
        """Load the last saved snapshot, or None if nothing was saved."""
        if not self.has_snapshot():
            return None
        conn = self._ensure_connected()

        notes = [
            Note(
                id=row["id"],
                title=row["title"],
                content=row["content"],
                folder_id=row["folder_id"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in conn.execute("SELECT * FROM notes ORDER BY position ASC")
        ]
        folders = [
            Folder(
                id=row["id"],
                name=row["name"],
                parent_id=row["parent_id"],
                created_at=row["created_at"],
            )
            for row in conn.execute("SELECT * FROM folders ORDER BY position ASC")
        ]

        return StoreSnapshot(
            notes=notes,
            folders=folders,
            active_note_id=self._get_state("active_note_id"),
            expanded_folders=self._get_state("expanded_folders", {}),
            cursors=self._get_state("cursors", {}),
            next_seq=self._get_state("next_seq", 0),
            is_synced=self._get_state("is_synced", False),
        )

    # ==================== Pending operations ====================

    def save_pending(self, operations: list[PendingOperation]) -> None:
        conn = self._ensure_connected()
        with conn:
            conn.execute("DELETE FROM pending_ops")
            conn.executemany(
                """
                INSERT INTO pending_ops (id, seq, kind, args, enqueued_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (op.id, op.seq, op.kind.value, json.dumps(op.args), op.enqueued_at)
                    for op in operations
                ],
            )

    def load_pending(self) -> list[PendingOperation]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT id, seq, kind, args, enqueued_at FROM pending_ops ORDER BY seq ASC"
        )
        return [
            PendingOperation.from_dict(
                {
                    "id": row["id"],
                    "seq": row["seq"],
                    "kind": row["kind"],
                    "args": json.loads(row["args"]),
                    "enqueued_at": row["enqueued_at"],
                }
            )
            for row in cursor
        ]

    # ==================== Settings ====================

    def save_settings(self, values: dict[str, SettingValue]) -> None:
        conn = self._ensure_connected()
        with conn:
            self._put_state(conn, "settings", values)

    def load_settings(self) -> dict[str, SettingValue] | None:
        return self._get_state("settings")

    def clear(self) -> None:
        """Forget everything (used on sign-out)."""
        conn = self._ensure_connected()
        with conn:
            conn.execute("DELETE FROM notes")
            conn.execute("DELETE FROM folders")
            conn.execute("DELETE FROM pending_ops")
            conn.execute("DELETE FROM state")
