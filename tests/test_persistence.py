"""Tests for SQLite state persistence."""

import pytest

from notesync.models import Folder, Note, OperationKind, PendingOperation
from notesync.store.persistence import StateStorage, StoreSnapshot


@pytest.fixture
def storage():
    """Create an in-memory state storage."""
    storage = StateStorage(":memory:")
    storage.connect()
    yield storage
    storage.close()


class TestSnapshot:
    """Tests for snapshot save/load."""

    def test_empty_has_no_snapshot(self, storage):
        """Test a fresh database reports nothing saved."""
        assert storage.has_snapshot() is False
        assert storage.load_snapshot() is None

    def test_round_trip_keeps_order(self, storage):
        """Test notes and folders come back in display order."""
        snapshot = StoreSnapshot(
            notes=[Note(id="b", title="B"), Note(id="a", title="A", folder_id="f")],
            folders=[Folder(id="f", name="F")],
            active_note_id="b",
            expanded_folders={"root": True, "f": False},
            cursors={"notes": "2024-01-01T00:00:00+00:00", "folders": None},
            next_seq=7,
            is_synced=True,
        )

        storage.save_snapshot(snapshot)
        loaded = storage.load_snapshot()

        assert [n.id for n in loaded.notes] == ["b", "a"]
        assert loaded.notes[1].folder_id == "f"
        assert loaded.folders == snapshot.folders
        assert loaded.active_note_id == "b"
        assert loaded.expanded_folders == {"root": True, "f": False}
        assert loaded.cursors["notes"] == "2024-01-01T00:00:00+00:00"
        assert loaded.next_seq == 7
        assert loaded.is_synced is True

    def test_save_replaces_previous(self, storage):
        """Test a later snapshot fully replaces an earlier one."""
        storage.save_snapshot(StoreSnapshot(notes=[Note(id="old")]))
        storage.save_snapshot(StoreSnapshot(notes=[Note(id="new")]))

        assert [n.id for n in storage.load_snapshot().notes] == ["new"]


class TestPendingAndSettings:
    """Tests for the pending queue and settings values."""

    def test_pending_round_trip(self, storage):
        """Test queued operations are restored by sequence."""
        ops = [
            PendingOperation(kind=OperationKind.DELETE_NOTE, args={"id": "n2"}, seq=4),
            PendingOperation(kind=OperationKind.CREATE_NOTE, args={"row": {"id": "n1"}}, seq=2),
        ]

        storage.save_pending(ops)
        loaded = storage.load_pending()

        assert [op.seq for op in loaded] == [2, 4]
        assert loaded[0].kind == OperationKind.CREATE_NOTE
        assert loaded[0].args == {"row": {"id": "n1"}}

    def test_settings_round_trip(self, storage):
        """Test settings values persist."""
        assert storage.load_settings() is None

        storage.save_settings({"theme": "dark", "showNoteDates": False})

        assert storage.load_settings() == {"theme": "dark", "showNoteDates": False}

    def test_clear(self, storage):
        """Test clear forgets everything."""
        storage.save_snapshot(StoreSnapshot(notes=[Note(id="n")]))
        storage.save_pending(
            [PendingOperation(kind=OperationKind.DELETE_NOTE, args={"id": "n"}, seq=0)]
        )

        storage.clear()

        assert storage.load_snapshot() is None
        assert storage.load_pending() == []

    def test_file_database_created(self, tmp_path):
        """Test a file path creates parent directories."""
        storage = StateStorage(tmp_path / "nested" / "state.db")
        storage.save_settings({"theme": "light"})
        storage.close()

        reopened = StateStorage(tmp_path / "nested" / "state.db")
        assert reopened.load_settings() == {"theme": "light"}
        reopened.close()
