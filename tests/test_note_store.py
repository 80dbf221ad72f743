"""Tests for the local note and folder store."""

import pytest

from notesync.models import DEFAULT_NOTE_TITLE, ChangeEvent, ChangeType, Folder, Note
from notesync.remote.base import RemoteRejectedError
from notesync.remote.memory import InMemoryBackend
from notesync.store.folder_tree import FolderCycleError
from notesync.store.note_store import MutationOutcome, NoteStore
from notesync.store.persistence import StateStorage
from notesync.sync.mappers import FOLDERS_TABLE, NOTES_TABLE, folder_to_row, note_to_row
from notesync.sync.offline_queue import FlushStatus

USER = "user-1"


class RejectingBackend(InMemoryBackend):
    """Backend that refuses every partial update."""

    async def update(self, table, user_id, record_id, values):
        self._check_online()
        raise RemoteRejectedError("permission denied")


class HookBackend(InMemoryBackend):
    """Backend that runs callbacks while a notes pull is in flight.

    ``before_select`` is awaited before the rows are read, ``on_select`` runs
    after.
    """

    def __init__(self):
        super().__init__()
        self.before_select = None
        self.on_select = None

    async def select(self, table, user_id, updated_after=None, column="updated_at"):
        if table == NOTES_TABLE and self.before_select is not None:
            hook, self.before_select = self.before_select, None
            await hook()
        rows = await super().select(table, user_id, updated_after, column)
        if table == NOTES_TABLE and self.on_select is not None:
            hook, self.on_select = self.on_select, None
            hook()
        return rows


def make_store(backend, storage=None, **kwargs) -> NoteStore:
    kwargs.setdefault("seed_default_note", False)
    store = NoteStore(
        backend, storage=storage, retry_delay=0, debounce_seconds=0.01, **kwargs
    )
    store.hydrate()
    return store


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    return make_store(backend)


class TestNoteMutations:
    """Tests for optimistic note mutations."""

    @pytest.mark.asyncio
    async def test_create_without_user_is_local(self, store, backend):
        """Test signed-out creates stay local."""
        mutation = store.create_note()

        assert store.notes[0].id == mutation.value
        assert store.notes[0].title == DEFAULT_NOTE_TITLE
        assert store.active_note_id == mutation.value
        assert await mutation == MutationOutcome.LOCAL
        assert backend.rows(NOTES_TABLE) == []

    @pytest.mark.asyncio
    async def test_create_confirmed_remotely(self, store, backend):
        """Test a signed-in create is visible locally at once and remotely after."""
        mutation = store.create_note(folder_id="f1", user_id=USER)

        assert store.get_note(mutation.value) is not None
        assert await mutation == MutationOutcome.CONFIRMED
        row = backend.get(NOTES_TABLE, mutation.value)
        assert row["user_id"] == USER
        assert row["folder_id"] == "f1"

    @pytest.mark.asyncio
    async def test_new_notes_go_to_head(self, store):
        """Test the newest note is first."""
        first = store.create_note().value
        second = store.create_note().value

        assert [n.id for n in store.notes] == [second, first]

    @pytest.mark.asyncio
    async def test_update_merges_and_stamps(self, store, backend):
        """Test updates merge fields and refresh updated_at."""
        note_id = store.create_note(user_id=USER).value
        before = store.get_note(note_id).updated_at

        mutation = store.update_note(note_id, {"title": "Plan"}, user_id=USER)

        assert mutation.value.title == "Plan"
        assert mutation.value.updated_at >= before
        assert await mutation == MutationOutcome.CONFIRMED
        await store.settle()
        assert backend.get(NOTES_TABLE, note_id)["title"] == "Plan"

    def test_update_rejects_unknown_fields(self, store):
        """Test only note fields may be updated."""
        note_id = store.create_note().value

        with pytest.raises(ValueError):
            store.update_note(note_id, {"colour": "red"})

    @pytest.mark.asyncio
    async def test_update_missing_note_skipped(self, store):
        """Test updating an unknown id changes nothing."""
        mutation = store.update_note("missing", {"title": "x"}, user_id=USER)

        assert mutation.value is None
        assert await mutation == MutationOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_delete_falls_back_active(self, store):
        """Test deleting the active note activates the first remaining one."""
        older = store.create_note().value
        newer = store.create_note().value

        store.delete_note(newer)

        assert store.active_note_id == older
        store.delete_note(older)
        assert store.active_note_id is None

    @pytest.mark.asyncio
    async def test_move_note(self, store, backend):
        """Test moving a note between folders."""
        note_id = store.create_note(user_id=USER).value

        mutation = store.move_note(note_id, "f2", user_id=USER)

        assert await mutation == MutationOutcome.CONFIRMED
        assert store.is_note_in_folder(note_id, "f2")
        assert backend.get(NOTES_TABLE, note_id)["folder_id"] == "f2"

    @pytest.mark.asyncio
    async def test_rejected_update_keeps_local_change(self):
        """Test a rejected write is recorded, not rolled back."""
        store = make_store(RejectingBackend())
        note_id = store.create_note().value

        mutation = store.update_note(note_id, {"content": "draft"}, user_id=USER)

        assert await mutation == MutationOutcome.FAILED
        assert store.get_note(note_id).content == "draft"
        assert "permission denied" in store.errors["updateNote"]
        assert not store.queue


class TestOfflineQueueing:
    """Tests for offline mutations and replay."""

    @pytest.mark.asyncio
    async def test_offline_create_then_flush(self, store, backend):
        """Test an offline create is queued and replayed on reconnect."""
        backend.online = False

        mutation = store.create_note(user_id=USER)

        assert await mutation == MutationOutcome.QUEUED
        assert store.errors["createNote"] == "queued"
        assert len(store.queue) == 1

        backend.online = True
        result = await store.flush_queue(USER)

        assert result.status == FlushStatus.SUCCESS
        assert backend.get(NOTES_TABLE, mutation.value) is not None
        assert "createNote" not in store.errors
        assert not store.queue

    @pytest.mark.asyncio
    async def test_later_mutations_queue_behind(self, store, backend):
        """Test nothing overtakes an operation already in the queue."""
        backend.online = False
        note_id = store.create_note(user_id=USER).value
        await store.settle()
        backend.online = True

        mutation = store.update_note(note_id, {"title": "After"}, user_id=USER)

        assert await mutation == MutationOutcome.QUEUED
        assert [op.kind.value for op in store.queue.pending] == ["createNote", "updateNote"]

        await store.flush_queue(USER)
        assert backend.get(NOTES_TABLE, note_id)["title"] == "After"

    @pytest.mark.asyncio
    async def test_flush_stops_while_offline(self, store, backend):
        """Test a flush without connectivity keeps everything."""
        backend.online = False
        store.create_note(user_id=USER)
        await store.settle()

        result = await store.flush_queue(USER)

        assert result.status == FlushStatus.OFFLINE
        assert len(store.queue) == 1


class TestFolders:
    """Tests for folder mutations."""

    @pytest.mark.asyncio
    async def test_create_folder_expands_parent(self, store):
        """Test creating a folder expands where it was created."""
        parent = store.create_folder("Work").value
        store.expanded_folders[parent] = False

        store.create_folder("Sub", parent_id=parent)

        assert store.expanded_folders[parent] is True
        assert store.expanded_folders["root"] is True

    def test_toggle_expanded(self, store):
        """Test toggling a folder's expanded flag."""
        folder_id = store.create_folder("A").value

        assert store.toggle_folder_expanded(folder_id) is True
        assert store.toggle_folder_expanded(folder_id) is False

    def test_move_folder_rejects_cycle(self, store):
        """Test a folder cannot move under its own descendant."""
        parent = store.create_folder("A").value
        child = store.create_folder("B", parent_id=parent).value

        with pytest.raises(FolderCycleError):
            store.move_folder(parent, child)
        assert store.get_folder(parent).parent_id is None

    @pytest.mark.asyncio
    async def test_delete_folder_reparents_subtree_notes(self, store, backend):
        """Test notes in a deleted subtree move to the deleted folder's parent."""
        root = store.create_folder("Root", user_id=USER).value
        doomed = store.create_folder("Doomed", user_id=USER, parent_id=root).value
        nested = store.create_folder("Nested", user_id=USER, parent_id=doomed).value
        in_doomed = store.create_note(folder_id=doomed, user_id=USER).value
        in_nested = store.create_note(folder_id=nested, user_id=USER).value
        await store.settle()

        mutation = store.delete_folder(doomed, user_id=USER)

        assert set(mutation.value) == {doomed, nested}
        assert [f.id for f in store.folders] == [root]
        assert store.get_note(in_doomed).folder_id == root
        assert store.get_note(in_nested).folder_id == root
        assert doomed not in store.expanded_folders
        remaining = {f.id for f in store.folders}
        assert all(n.folder_id in remaining or n.folder_id is None for n in store.notes)

        assert await mutation == MutationOutcome.CONFIRMED
        assert {r["id"] for r in backend.rows(FOLDERS_TABLE, USER)} == {root}
        assert backend.get(NOTES_TABLE, in_nested)["folder_id"] == root

    @pytest.mark.asyncio
    async def test_delete_top_level_folder_moves_notes_to_root(self, store):
        """Test deleting a root folder leaves its notes unfiled."""
        folder_id = store.create_folder("Top").value
        note_id = store.create_note(folder_id=folder_id).value

        store.delete_folder(folder_id)

        assert store.get_note(note_id).folder_id is None


class TestSyncAll:
    """Tests for full reconciliation."""

    @pytest.mark.asyncio
    async def test_refused_before_hydration(self, backend):
        """Test sync never runs on unhydrated state."""
        store = NoteStore(backend, seed_default_note=False)

        assert await store.sync_all(USER) is False
        assert backend.rows(NOTES_TABLE) == []

    @pytest.mark.asyncio
    async def test_merges_local_and_remote(self, store, backend):
        """Test remote notes and folders are pulled and local ones pushed."""
        await backend.upsert(NOTES_TABLE, [note_to_row(Note(id="remote"), USER)])
        await backend.upsert(
            FOLDERS_TABLE, [folder_to_row(Folder(id="rf", name="Remote"), USER)]
        )
        local_id = store.create_note().value

        assert await store.sync_all(USER) is True

        assert {n.id for n in store.notes} == {"remote", local_id}
        assert [f.id for f in store.folders] == ["rf"]
        assert backend.get(NOTES_TABLE, local_id) is not None
        assert store.is_synced
        assert store.cursors[NOTES_TABLE] is not None
        assert not store.is_loading

    @pytest.mark.asyncio
    async def test_idempotent_without_duplicates(self, store, backend):
        """Test repeated syncs keep one copy of each note."""
        await backend.upsert(NOTES_TABLE, [note_to_row(Note(id="shared"), USER)])
        store.create_note()

        await store.sync_all(USER)
        first = sorted(n.id for n in store.notes)
        await store.sync_all(USER)
        second = [n.id for n in store.notes]

        assert sorted(second) == first
        assert len(second) == len(set(second))

    @pytest.mark.asyncio
    async def test_offline_sync_records_error(self, store, backend):
        """Test a failed sync leaves local state and records the error."""
        store.create_note()
        backend.online = False

        assert await store.sync_all(USER) is False

        assert len(store.notes) == 1
        assert "syncAll" in store.errors
        assert not store.is_synced

    @pytest.mark.asyncio
    async def test_local_edits_during_sync_survive(self):
        """Test creates, edits and deletes made mid-sync are not overwritten."""
        backend = HookBackend()
        store = make_store(backend)
        kept = store.create_note().value
        gone = store.create_note().value
        created = []

        def edit_during_pull():
            created.append(store.create_note().value)
            store.update_note(kept, {"title": "edited"})
            store.delete_note(gone)

        backend.on_select = edit_during_pull
        await store.sync_all(USER)

        ids = {n.id for n in store.notes}
        assert created[0] in ids
        assert gone not in ids
        assert store.get_note(kept).title == "edited"

    @pytest.mark.asyncio
    async def test_realtime_insert_before_read_kept_once(self):
        """Test a remote note applied mid-sync and also pulled appears once."""
        backend = HookBackend()
        store = make_store(backend)
        row = note_to_row(Note(id="x1", title="remote"), USER)

        async def insert_before_read():
            await backend.upsert(NOTES_TABLE, [row])
            store._apply_note_events(
                [ChangeEvent(table=NOTES_TABLE, type=ChangeType.INSERT, new=row)]
            )

        backend.before_select = insert_before_read
        await store.sync_all(USER)

        assert [n.id for n in store.notes] == ["x1"]

    @pytest.mark.asyncio
    async def test_own_create_before_read_kept_once(self):
        """Test a confirmed create that the pull also returns is not doubled."""
        backend = HookBackend()
        store = make_store(backend)
        created = []

        async def create_before_read():
            mutation = store.create_note(user_id=USER)
            created.append(mutation.value)
            assert await mutation == MutationOutcome.CONFIRMED

        backend.before_select = create_before_read
        await store.sync_all(USER)

        ids = [n.id for n in store.notes]
        assert ids == created
        assert len(ids) == len(set(ids))


class TestRealtime:
    """Tests for applying remote change events."""

    @pytest.mark.asyncio
    async def test_remote_insert_update_delete(self, store, backend):
        """Test another client's changes are applied locally."""
        await store.enable_realtime(USER)

        await backend.upsert(NOTES_TABLE, [note_to_row(Note(id="r1", title="a"), USER)])
        await store.settle()
        assert store.notes[0].id == "r1"

        await backend.update(NOTES_TABLE, USER, "r1", {"title": "b"})
        await store.settle()
        assert store.get_note("r1").title == "b"

        store.set_active_note("r1")
        await backend.delete(NOTES_TABLE, USER, ["r1"])
        await store.settle()
        assert store.get_note("r1") is None
        assert store.active_note_id is None

        await store.disable_realtime()

    @pytest.mark.asyncio
    async def test_own_create_not_duplicated(self, store):
        """Test the echo of a local create does not add a second copy."""
        await store.enable_realtime(USER)

        note_id = store.create_note(user_id=USER).value
        await store.settle()

        assert [n.id for n in store.notes] == [note_id]
        await store.disable_realtime()

    @pytest.mark.asyncio
    async def test_remote_folder_delete_prunes_expanded(self, store, backend):
        """Test removed folders lose their expanded flag."""
        await store.enable_realtime(USER)
        await backend.upsert(FOLDERS_TABLE, [folder_to_row(Folder(id="f", name="F"), USER)])
        await store.settle()
        store.toggle_folder_expanded("f")

        await backend.delete(FOLDERS_TABLE, USER, ["f"])
        await store.settle()

        assert store.get_folder("f") is None
        assert "f" not in store.expanded_folders
        await store.disable_realtime()

    @pytest.mark.asyncio
    async def test_other_users_changes_ignored(self, store, backend):
        """Test subscriptions are scoped to the signed-in user."""
        await store.enable_realtime(USER)

        await backend.upsert(NOTES_TABLE, [note_to_row(Note(id="x"), "someone-else")])
        await store.settle()

        assert store.notes == []
        await store.disable_realtime()

    @pytest.mark.asyncio
    async def test_reenable_replaces_subscriptions(self, store, backend):
        """Test enabling twice leaves one feed per collection and no double delivery."""
        await store.enable_realtime(USER)
        first = list(store._subscriptions.values())

        await store.enable_realtime(USER)

        assert all(sub.closed for sub in first)
        live = [sub for sub in backend._subscriptions if not sub.closed]
        assert len(live) == 2

        await backend.upsert(NOTES_TABLE, [note_to_row(Note(id="r1"), USER)])
        await store.settle()

        assert [n.id for n in store.notes] == ["r1"]
        await store.disable_realtime()


class TestPersistence:
    """Tests for hydration and reset."""

    @pytest.mark.asyncio
    async def test_hydrate_restores_state_and_queue(self, backend):
        """Test a new store resumes from the persisted snapshot."""
        storage = StateStorage(":memory:")
        first = make_store(backend, storage)
        folder_id = first.create_folder("Saved").value
        backend.online = False
        note_id = first.create_note(folder_id=folder_id, user_id=USER).value
        await first.settle()

        second = make_store(backend, storage)

        assert [n.id for n in second.notes] == [note_id]
        assert [f.id for f in second.folders] == [folder_id]
        assert second.active_note_id == note_id
        assert len(second.queue) == 1

        backend.online = True
        result = await second.flush_queue(USER)
        assert result.status == FlushStatus.SUCCESS
        assert backend.get(NOTES_TABLE, note_id) is not None
        storage.close()

    def test_empty_store_seeds_default_note(self, backend):
        """Test a first start gets one untitled note."""
        store = make_store(backend, seed_default_note=True)

        assert len(store.notes) == 1
        assert store.notes[0].title == DEFAULT_NOTE_TITLE
        assert store.active_note_id == store.notes[0].id

    @pytest.mark.asyncio
    async def test_reset(self, backend):
        """Test reset returns to the signed-out default."""
        store = make_store(backend, seed_default_note=True)
        backend.online = False
        store.create_note(user_id=USER)
        await store.settle()

        await store.reset()

        assert len(store.notes) == 1
        assert not store.queue
        assert store.errors == {}
        assert store.cursors == {NOTES_TABLE: None, FOLDERS_TABLE: None}
        assert store.expanded_folders == {"root": True}

    def test_status_summary(self, store):
        """Test the status dictionary."""
        store.create_note()

        status = store.status()

        assert status["notes"] == 1
        assert status["pending_operations"] == 0
        assert status["is_synced"] is False


class TestReplayEquivalence:
    """Tests that offline replay matches online application."""

    @staticmethod
    async def apply_edits(store: NoteStore) -> None:
        folder = store.create_folder("Projects", user_id=USER).value
        keep = store.create_note(user_id=USER).value
        drop = store.create_note(user_id=USER).value
        store.update_note(keep, {"title": "Roadmap", "content": "q3"}, user_id=USER)
        store.move_note(keep, folder, user_id=USER)
        store.delete_note(drop, user_id=USER)
        store.update_folder(folder, {"name": "Work"}, user_id=USER)
        await store.settle()

    @staticmethod
    def remote_shape(backend: InMemoryBackend) -> list[tuple]:
        folders = {r["id"]: r["name"] for r in backend.rows(FOLDERS_TABLE, USER)}
        return sorted(
            (r["title"], r["content"], folders.get(r["folder_id"]))
            for r in backend.rows(NOTES_TABLE, USER)
        ) + sorted(folders.values())

    @pytest.mark.asyncio
    async def test_offline_replay_matches_online(self):
        """Test the same edits reach the same remote state either way."""
        online_backend = InMemoryBackend()
        await self.apply_edits(make_store(online_backend))

        offline_backend = InMemoryBackend(online=False)
        store = make_store(offline_backend)
        await self.apply_edits(store)
        assert offline_backend.rows(NOTES_TABLE) == []

        offline_backend.online = True
        result = await store.flush_queue(USER)

        assert result.status == FlushStatus.SUCCESS
        assert self.remote_shape(offline_backend) == self.remote_shape(online_backend)
        assert store.errors == {}

    @pytest.mark.asyncio
    async def test_rejected_replay_reported_by_kind(self):
        """Test a rejected queued operation stays queued with its error."""
        backend = RejectingBackend(online=False)
        store = make_store(backend)
        note_id = store.create_note().value
        store.update_note(note_id, {"title": "x"}, user_id=USER)
        await store.settle()

        backend.online = True
        result = await store.flush_queue(USER)

        assert result.status == FlushStatus.FAILED
        assert store.errors["updateNote"] == "permission denied"
        assert len(store.queue) == 1
