"""Core data types shared by the store, the sync engine and the backends."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_NOTE_TITLE = "Untitled Note"

# Scalar values a settings key may hold
SettingValue = str | int | float | bool | None


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    """Generate an opaque record identifier."""
    return uuid.uuid4().hex


@dataclass
class Note:
    """A single note as held in local state."""

    id: str
    title: str = DEFAULT_NOTE_TITLE
    content: str = ""
    folder_id: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def merged(self, **fields: Any) -> "Note":
        """Return a copy with fields overwritten."""
        return replace(self, **fields)


@dataclass
class Folder:
    """A folder node; parent_id forms the tree."""

    id: str
    name: str
    parent_id: str | None = None
    created_at: str = field(default_factory=now_iso)

    def merged(self, **fields: Any) -> "Folder":
        return replace(self, **fields)


class OperationKind(str, Enum):
    """Kinds of mutation that are confirmed remotely."""

    CREATE_NOTE = "createNote"
    UPDATE_NOTE = "updateNote"
    DELETE_NOTE = "deleteNote"
    MOVE_NOTE = "moveNote"
    CREATE_FOLDER = "createFolder"
    UPDATE_FOLDER = "updateFolder"
    DELETE_FOLDER = "deleteFolder"


@dataclass
class PendingOperation:
    """A mutation waiting for remote confirmation."""

    kind: OperationKind
    args: dict[str, Any]
    seq: int
    id: str = field(default_factory=new_id)
    enqueued_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "args": self.args,
            "seq": self.seq,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingOperation":
        """Create from dictionary."""
        return cls(
            kind=OperationKind(data["kind"]),
            args=data["args"],
            seq=data["seq"],
            id=data["id"],
            enqueued_at=data["enqueued_at"],
        )


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A row-level change pushed by the backend's change feed."""

    table: str
    type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_timestamp: str = field(default_factory=now_iso)

    @property
    def record_id(self) -> str | None:
        """Identifier of the affected row, taken from new or old payload."""
        for row in (self.new, self.old):
            if row and row.get("id") is not None:
                return row["id"]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "type": self.type.value,
            "new": self.new,
            "old": self.old,
            "commit_timestamp": self.commit_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], table: str | None = None) -> "ChangeEvent":
        return cls(
            table=data.get("table") or table or "",
            type=ChangeType(data["type"].upper()),
            new=data.get("new") or None,
            old=data.get("old") or None,
            commit_timestamp=data.get("commit_timestamp") or now_iso(),
        )


@dataclass
class SettingsRecord:
    """The remote settings row for one user."""

    settings: dict[str, SettingValue]
    version: int
    client_id: str | None = None
    updated_at: str | None = None
