"""Conversions between local records and remote row shapes."""

from typing import Any

from ..models import Folder, Note

NOTES_TABLE = "notes"
FOLDERS_TABLE = "folders"

# Local attribute -> remote column for partial updates
NOTE_COLUMNS = {"title": "title", "content": "content", "folder_id": "folder_id"}
FOLDER_COLUMNS = {"name": "name", "parent_id": "parent_id"}


def note_to_row(note: Note, user_id: str) -> dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "folder_id": note.folder_id,
        "user_id": user_id,
        "created_at": note.created_at,
        "updated_at": note.updated_at,
    }


def row_to_note(row: dict[str, Any]) -> Note:
    return Note(
        id=row["id"],
        title=row.get("title") or "",
        content=row.get("content") or "",
        folder_id=row.get("folder_id"),
        created_at=row.get("created_at") or "",
        updated_at=row.get("updated_at") or row.get("created_at") or "",
    )


def folder_to_row(folder: Folder, user_id: str) -> dict[str, Any]:
    return {
        "id": folder.id,
        "name": folder.name,
        "parent_id": folder.parent_id,
        "user_id": user_id,
        "created_at": folder.created_at,
    }


def row_to_folder(row: dict[str, Any]) -> Folder:
    return Folder(
        id=row["id"],
        name=row.get("name") or "",
        parent_id=row.get("parent_id"),
        created_at=row.get("created_at") or "",
    )


def note_changes_to_row(fields: dict[str, Any], updated_at: str) -> dict[str, Any]:
    """Map a partial note update onto remote columns, stamping updated_at."""
    values = {NOTE_COLUMNS[k]: v for k, v in fields.items() if k in NOTE_COLUMNS}
    values["updated_at"] = updated_at
    return values


def folder_changes_to_row(fields: dict[str, Any]) -> dict[str, Any]:
    return {FOLDER_COLUMNS[k]: v for k, v in fields.items() if k in FOLDER_COLUMNS}


def note_fields_from_row(row: dict[str, Any]) -> dict[str, Any]:
    """Local note fields present in a (possibly partial) remote row."""
    fields = {local: row[remote] for local, remote in NOTE_COLUMNS.items() if remote in row}
    for column in ("created_at", "updated_at"):
        if column in row:
            fields[column] = row[column]
    return fields


def folder_fields_from_row(row: dict[str, Any]) -> dict[str, Any]:
    fields = {local: row[remote] for local, remote in FOLDER_COLUMNS.items() if remote in row}
    if "created_at" in row:
        fields["created_at"] = row["created_at"]
    return fields
