"""Tests for record/row mappers."""

from notesync.models import Folder, Note
from notesync.sync.mappers import (
    folder_changes_to_row,
    folder_fields_from_row,
    folder_to_row,
    note_changes_to_row,
    note_fields_from_row,
    note_to_row,
    row_to_folder,
    row_to_note,
)


class TestNoteMapping:
    """Tests for note conversions."""

    def test_note_to_row_adds_owner(self):
        """Test the remote row carries the owning user."""
        note = Note(id="n1", title="Groceries", content="milk", folder_id="f1")

        row = note_to_row(note, "user-1")

        assert row["id"] == "n1"
        assert row["title"] == "Groceries"
        assert row["content"] == "milk"
        assert row["folder_id"] == "f1"
        assert row["user_id"] == "user-1"
        assert row["updated_at"] == note.updated_at

    def test_row_to_note_fills_missing_fields(self):
        """Test null columns become empty strings, updated_at falls back."""
        note = row_to_note(
            {"id": "n1", "title": None, "content": None, "created_at": "2024-01-01"}
        )

        assert note.title == ""
        assert note.content == ""
        assert note.folder_id is None
        assert note.updated_at == "2024-01-01"

    def test_round_trip_preserves_note(self):
        """Test a note survives conversion to a row and back."""
        note = Note(id="n1", title="t", content="c", folder_id=None)

        assert row_to_note(note_to_row(note, "u")) == note

    def test_changes_stamp_updated_at(self):
        """Test partial updates always carry the new timestamp."""
        values = note_changes_to_row({"title": "New"}, "2024-05-01T00:00:00")

        assert values == {"title": "New", "updated_at": "2024-05-01T00:00:00"}

    def test_fields_from_partial_row(self):
        """Test only columns present in the row are mapped."""
        fields = note_fields_from_row({"id": "n1", "content": "x", "updated_at": "t2"})

        assert fields == {"content": "x", "updated_at": "t2"}


class TestFolderMapping:
    """Tests for folder conversions."""

    def test_folder_round_trip(self):
        """Test a folder survives conversion to a row and back."""
        folder = Folder(id="f1", name="Work", parent_id="f0")

        row = folder_to_row(folder, "u")

        assert row["user_id"] == "u"
        assert row_to_folder(row) == folder

    def test_changes_ignore_unknown_fields(self):
        """Test only folder columns are sent."""
        assert folder_changes_to_row({"name": "A", "color": "red"}) == {"name": "A"}

    def test_fields_from_row(self):
        """Test parent_id null is kept as a move to root."""
        assert folder_fields_from_row({"id": "f1", "parent_id": None}) == {
            "parent_id": None
        }
