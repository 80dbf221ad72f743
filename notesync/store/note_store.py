"""Local state store for notes and folders.

Every mutation is applied to local state immediately and returns a
:class:`Mutation` whose value is usable right away. The remote write runs in
the background; awaiting the mutation yields how it ended. Offline failures
are queued for replay, other failures are recorded in ``errors``. Local
changes are never rolled back.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from ..connectivity import ConnectivityMonitor
from ..models import (
    ChangeEvent,
    ChangeType,
    Folder,
    Note,
    OperationKind,
    PendingOperation,
    new_id,
    now_iso,
)
from ..remote.base import (
    OfflineError,
    RemoteBackend,
    RemoteError,
    Subscription,
    TransientRemoteError,
)
from ..sync.coalescer import EventCoalescer
from ..sync.mappers import (
    FOLDERS_TABLE,
    NOTES_TABLE,
    folder_changes_to_row,
    folder_fields_from_row,
    folder_to_row,
    note_changes_to_row,
    note_fields_from_row,
    note_to_row,
    row_to_folder,
    row_to_note,
)
from ..sync.offline_queue import FlushResult, FlushStatus, OfflineQueue
from ..sync.retry import retry_with_backoff
from ..sync.sync_manager import CollectionSpec, SyncManager
from .folder_tree import FolderTree
from .persistence import StateStorage, StoreSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUEUED = "queued"
SYNC_ERROR_KEY = "syncAll"

NOTE_FIELDS = frozenset({"title", "content", "folder_id"})
FOLDER_FIELDS = frozenset({"name", "parent_id"})


class MutationOutcome(Enum):
    """How the remote phase of a mutation ended."""

    LOCAL = "local"  # No signed-in user, nothing to confirm
    SKIPPED = "skipped"  # Target did not exist locally, nothing changed
    CONFIRMED = "confirmed"
    QUEUED = "queued"  # Offline; waiting in the offline queue
    FAILED = "failed"  # Rejected; local change kept, error recorded


class Mutation(Generic[T]):
    """Two-phase result: the local value now, the remote outcome when awaited."""

    def __init__(
        self,
        value: T,
        task: "asyncio.Task[MutationOutcome] | None" = None,
        outcome: MutationOutcome | None = None,
    ):
        self.value = value
        self._task = task
        self._outcome = outcome

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def confirmed(self) -> MutationOutcome:
        if self._task is not None:
            return await self._task
        return self._outcome

    def __await__(self):
        return self.confirmed().__await__()


class NoteStore:
    """Authoritative in-memory model of notes, folders and their sync state."""

    def __init__(
        self,
        backend: RemoteBackend,
        storage: StateStorage | None = None,
        connectivity: ConnectivityMonitor | None = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        debounce_seconds: float = 0.1,
        seed_default_note: bool = True,
    ):
        """Initialize the store.

        Args:
            backend: Remote backend for confirmations and sync.
            storage: Optional persisted snapshot used for hydration.
            connectivity: Optional monitor consulted to classify failures.
            max_retries: Retries for transient remote failures.
            retry_delay: Initial backoff in seconds.
            debounce_seconds: Coalescing window for realtime events.
            seed_default_note: Start empty stores with one untitled note.
        """
        self.backend = backend
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.debounce = debounce_seconds
        self.seed_default_note = seed_default_note
        self._storage = storage
        self._connectivity = connectivity

        self.notes_sync: SyncManager[Note] = SyncManager(
            backend,
            CollectionSpec(NOTES_TABLE, row_to_note, note_to_row, "updated_at"),
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        self.folders_sync: SyncManager[Folder] = SyncManager(
            backend,
            CollectionSpec(FOLDERS_TABLE, row_to_folder, folder_to_row),
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        self.queue = OfflineQueue(self._replay, on_change=self._persist_queue)

        self.notes: list[Note] = []
        self.folders: list[Folder] = []
        self.active_note_id: str | None = None
        self.expanded_folders: dict[str, bool] = {"root": True}
        self.cursors: dict[str, str | None] = {NOTES_TABLE: None, FOLDERS_TABLE: None}
        self.errors: dict[str, str] = {}
        self.is_loading = False
        self.is_synced = False
        self.hydrated = False

        self._seq = 0
        self._confirmations: set[asyncio.Task] = set()
        self._subscriptions: dict[str, Subscription] = {}
        self._coalescers: dict[str, EventCoalescer] = {}
        self.realtime_user_id: str | None = None

        self._executors: dict[OperationKind, Callable[[dict[str, Any], str], Any]] = {
            OperationKind.CREATE_NOTE: self._remote_create_note,
            OperationKind.UPDATE_NOTE: self._remote_update_note,
            OperationKind.DELETE_NOTE: self._remote_delete_note,
            OperationKind.MOVE_NOTE: self._remote_update_note,
            OperationKind.CREATE_FOLDER: self._remote_create_folder,
            OperationKind.UPDATE_FOLDER: self._remote_update_folder,
            OperationKind.DELETE_FOLDER: self._remote_delete_folder,
        }

    # ==================== Hydration & persistence ====================

    def hydrate(self) -> None:
        """Restore persisted state; sync_all is refused until this has run."""
        snapshot = self._storage.load_snapshot() if self._storage else None
        if snapshot is not None:
            self.notes = snapshot.notes
            self.folders = snapshot.folders
            self.active_note_id = snapshot.active_note_id
            self.expanded_folders = snapshot.expanded_folders or {"root": True}
            self.cursors.update(snapshot.cursors)
            self._seq = snapshot.next_seq
            self.is_synced = snapshot.is_synced
            logger.info(
                f"Hydrated {len(self.notes)} notes and {len(self.folders)} folders"
            )
        elif self.seed_default_note and not self.notes:
            self._seed_default_note()

        if self._storage is not None:
            pending = self._storage.load_pending()
            if pending:
                self.queue.load(pending)
                self._seq = max(self._seq, pending[-1].seq + 1)
                logger.info(f"Restored {len(pending)} queued operations")

        self.hydrated = True
        self._persist()

    def _seed_default_note(self) -> None:
        note = Note(id=new_id())
        self.notes = [note]
        self.active_note_id = note.id

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            notes=list(self.notes),
            folders=list(self.folders),
            active_note_id=self.active_note_id,
            expanded_folders=dict(self.expanded_folders),
            cursors=dict(self.cursors),
            next_seq=self._seq,
            is_synced=self.is_synced,
        )

    def _persist(self) -> None:
        # Writing before hydration would clobber the saved snapshot
        if self._storage is None or not self.hydrated:
            return
        self._storage.save_snapshot(self.snapshot())

    def _persist_queue(self, operations: list[PendingOperation]) -> None:
        if self._storage is not None:
            self._storage.save_pending(operations)

    # ==================== Lookups ====================

    def _note_index(self, note_id: str | None) -> int | None:
        for i, note in enumerate(self.notes):
            if note.id == note_id:
                return i
        return None

    def _folder_index(self, folder_id: str | None) -> int | None:
        for i, folder in enumerate(self.folders):
            if folder.id == folder_id:
                return i
        return None

    def get_note(self, note_id: str) -> Note | None:
        index = self._note_index(note_id)
        return self.notes[index] if index is not None else None

    def get_folder(self, folder_id: str) -> Folder | None:
        index = self._folder_index(folder_id)
        return self.folders[index] if index is not None else None

    def folder_tree(self) -> FolderTree:
        return FolderTree(self.folders)

    def is_note_in_folder(self, note_id: str, folder_id: str | None) -> bool:
        note = self.get_note(note_id)
        return note is not None and note.folder_id == folder_id

    def _fallback_active(self) -> None:
        if self._note_index(self.active_note_id) is None:
            self.active_note_id = self.notes[0].id if self.notes else None

    # ==================== Two-phase mutation core ====================

    def _is_offline(self, error: BaseException) -> bool:
        if isinstance(error, OfflineError):
            return True
        return self._connectivity is not None and not self._connectivity.is_online

    def _mutate(
        self,
        kind: OperationKind,
        args: dict[str, Any],
        user_id: str | None,
        value: T,
    ) -> Mutation[T]:
        """Persist the local change and start its remote confirmation."""
        seq = self._seq
        self._seq += 1
        self._persist()

        if user_id is None:
            return Mutation(value, outcome=MutationOutcome.LOCAL)

        operation = PendingOperation(kind=kind, args=args, seq=seq)
        if self.queue:
            # Earlier operations are still pending; keep causal order
            self._queue_operation(operation)
            return Mutation(value, outcome=MutationOutcome.QUEUED)

        task = asyncio.create_task(self._confirm(operation, user_id))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)
        return Mutation(value, task=task)

    def _queue_operation(self, operation: PendingOperation) -> None:
        self.queue.enqueue(operation)
        self.errors[operation.kind.value] = QUEUED

    async def _execute(self, operation: PendingOperation, user_id: str) -> None:
        executor = self._executors[operation.kind]
        await retry_with_backoff(
            lambda: executor(operation.args, user_id),
            retries=self.max_retries,
            delay=self.retry_delay,
            retry_on=(TransientRemoteError,),
        )

    async def _confirm(self, operation: PendingOperation, user_id: str) -> MutationOutcome:
        kind = operation.kind.value
        try:
            await self._execute(operation, user_id)
        except Exception as e:
            if self._is_offline(e):
                logger.warning(f"{kind} could not reach the backend, queued: {e}")
                self._queue_operation(operation)
                return MutationOutcome.QUEUED
            logger.error(f"{kind} failed remotely, keeping local change: {e}")
            self.errors[kind] = str(e)
            return MutationOutcome.FAILED

        self.errors.pop(kind, None)
        return MutationOutcome.CONFIRMED

    async def _replay(self, operation: PendingOperation, user_id: str) -> None:
        """Offline-queue executor: run one operation, reporting offline uniformly."""
        try:
            await self._execute(operation, user_id)
        except RemoteError as e:
            if self._is_offline(e) and not isinstance(e, OfflineError):
                raise OfflineError(str(e)) from e
            raise

    # ==================== Remote operations ====================

    async def _remote_create_note(self, args: dict[str, Any], user_id: str) -> None:
        # Upsert keeps a replayed create harmless if the first one landed
        await self.backend.upsert(NOTES_TABLE, [args["row"]])

    async def _remote_update_note(self, args: dict[str, Any], user_id: str) -> None:
        await self.backend.update(NOTES_TABLE, user_id, args["id"], args["values"])

    async def _remote_delete_note(self, args: dict[str, Any], user_id: str) -> None:
        await self.backend.delete(NOTES_TABLE, user_id, [args["id"]])

    async def _remote_create_folder(self, args: dict[str, Any], user_id: str) -> None:
        await self.backend.upsert(FOLDERS_TABLE, [args["row"]])

    async def _remote_update_folder(self, args: dict[str, Any], user_id: str) -> None:
        await self.backend.update(FOLDERS_TABLE, user_id, args["id"], args["values"])

    async def _remote_delete_folder(self, args: dict[str, Any], user_id: str) -> None:
        # Notes leave the folders before the folders go away
        for note_id in args["note_ids"]:
            await self.backend.update(
                NOTES_TABLE,
                user_id,
                note_id,
                {"folder_id": args["parent_id"], "updated_at": args["updated_at"]},
            )
        await self.backend.delete(FOLDERS_TABLE, user_id, args["folder_ids"])

    # ==================== Note mutations ====================

    def create_note(
        self, folder_id: str | None = None, user_id: str | None = None
    ) -> Mutation[str]:
        """Insert a new note at the head and make it active."""
        note = Note(id=new_id(), folder_id=folder_id)
        self.notes.insert(0, note)
        self.active_note_id = note.id
        return self._mutate(
            OperationKind.CREATE_NOTE,
            {"row": note_to_row(note, user_id)},
            user_id,
            note.id,
        )

    def update_note(
        self, note_id: str, fields: dict[str, Any], user_id: str | None = None
    ) -> Mutation[Note | None]:
        """Merge fields into a note and refresh its updated timestamp."""
        unknown = set(fields) - NOTE_FIELDS
        if unknown:
            raise ValueError(f"Unknown note fields: {sorted(unknown)}")
        index = self._note_index(note_id)
        if index is None:
            return Mutation(None, outcome=MutationOutcome.SKIPPED)

        updated_at = now_iso()
        note = self.notes[index].merged(**fields, updated_at=updated_at)
        self.notes[index] = note
        return self._mutate(
            OperationKind.UPDATE_NOTE,
            {"id": note_id, "values": note_changes_to_row(fields, updated_at)},
            user_id,
            note,
        )

    def delete_note(self, note_id: str, user_id: str | None = None) -> Mutation[bool]:
        index = self._note_index(note_id)
        if index is None:
            return Mutation(False, outcome=MutationOutcome.SKIPPED)

        self.notes.pop(index)
        self._fallback_active()
        return self._mutate(OperationKind.DELETE_NOTE, {"id": note_id}, user_id, True)

    def move_note(
        self, note_id: str, folder_id: str | None, user_id: str | None = None
    ) -> Mutation[Note | None]:
        index = self._note_index(note_id)
        if index is None:
            return Mutation(None, outcome=MutationOutcome.SKIPPED)

        updated_at = now_iso()
        note = self.notes[index].merged(folder_id=folder_id, updated_at=updated_at)
        self.notes[index] = note
        return self._mutate(
            OperationKind.MOVE_NOTE,
            {"id": note_id, "values": {"folder_id": folder_id, "updated_at": updated_at}},
            user_id,
            note,
        )

    def set_active_note(self, note_id: str | None) -> None:
        self.active_note_id = note_id
        self._persist()

    # ==================== Folder mutations ====================

    def create_folder(
        self, name: str, user_id: str | None = None, parent_id: str | None = None
    ) -> Mutation[str]:
        """Add a folder and expand its parent (or the root)."""
        folder = Folder(id=new_id(), name=name, parent_id=parent_id)
        self.folders.append(folder)
        self.expanded_folders[parent_id or "root"] = True
        return self._mutate(
            OperationKind.CREATE_FOLDER,
            {"row": folder_to_row(folder, user_id)},
            user_id,
            folder.id,
        )

    def update_folder(
        self, folder_id: str, fields: dict[str, Any], user_id: str | None = None
    ) -> Mutation[Folder | None]:
        """Shallow-merge fields into a folder.

        Reparenting through here skips the cycle check; use move_folder or
        FolderTree.would_create_cycle first.
        """
        unknown = set(fields) - FOLDER_FIELDS
        if unknown:
            raise ValueError(f"Unknown folder fields: {sorted(unknown)}")
        index = self._folder_index(folder_id)
        if index is None:
            return Mutation(None, outcome=MutationOutcome.SKIPPED)

        folder = self.folders[index].merged(**fields)
        self.folders[index] = folder
        return self._mutate(
            OperationKind.UPDATE_FOLDER,
            {"id": folder_id, "values": folder_changes_to_row(fields)},
            user_id,
            folder,
        )

    def move_folder(
        self, folder_id: str, parent_id: str | None, user_id: str | None = None
    ) -> Mutation[Folder | None]:
        """Reparent a folder after checking the move cannot form a cycle.

        Raises:
            FolderCycleError: If parent_id is the folder or one of its descendants.
        """
        self.folder_tree().check_move(folder_id, parent_id)
        return self.update_folder(folder_id, {"parent_id": parent_id}, user_id)

    def delete_folder(self, folder_id: str, user_id: str | None = None) -> Mutation[list[str]]:
        """Remove a folder and its descendants, moving their notes up.

        Notes in any removed folder are reparented to the deleted folder's
        original parent. Returns the removed folder ids.
        """
        index = self._folder_index(folder_id)
        if index is None:
            return Mutation([], outcome=MutationOutcome.SKIPPED)

        parent_id = self.folders[index].parent_id
        closure = self.folder_tree().descendants(folder_id)
        removed = set(closure)
        updated_at = now_iso()

        moved: list[str] = []
        for i, note in enumerate(self.notes):
            if note.folder_id in removed:
                self.notes[i] = note.merged(folder_id=parent_id, updated_at=updated_at)
                moved.append(note.id)

        self.folders = [f for f in self.folders if f.id not in removed]
        for fid in closure:
            self.expanded_folders.pop(fid, None)

        return self._mutate(
            OperationKind.DELETE_FOLDER,
            {
                "folder_ids": closure,
                "note_ids": moved,
                "parent_id": parent_id,
                "updated_at": updated_at,
            },
            user_id,
            closure,
        )

    def toggle_folder_expanded(self, folder_id: str) -> bool:
        expanded = not self.expanded_folders.get(folder_id, False)
        self.expanded_folders[folder_id] = expanded
        self._persist()
        return expanded

    # ==================== Reconciliation ====================

    @staticmethod
    def _reconcile(merged: list[T], before: list[T], current: list[T]) -> list[T]:
        """Fold local edits made while a sync was in flight into its result.

        Items created or replaced locally during the sync win over the merged
        copy, and items deleted locally during the sync stay deleted.
        """
        before_by_id = {item.id: item for item in before}  # type: ignore[attr-defined]
        current_by_id = {item.id: item for item in current}  # type: ignore[attr-defined]

        result: list[T] = [
            item
            for item in current
            if item.id not in before_by_id  # type: ignore[attr-defined]
        ]
        for item in merged:
            item_id = item.id  # type: ignore[attr-defined]
            if item_id in before_by_id and item_id not in current_by_id:
                continue
            # Arrived locally during the sync; already kept above
            if item_id not in before_by_id and item_id in current_by_id:
                continue
            local = current_by_id.get(item_id)
            if local is not None and local is not before_by_id.get(item_id):
                result.append(local)
            else:
                result.append(item)
        return result

    async def sync_all(self, user_id: str) -> bool:
        """Reconcile notes and folders with the backend.

        Does nothing until hydrate() has run.

        Returns:
            True if both collections were reconciled.
        """
        if not self.hydrated:
            logger.debug("Skipping sync: store not hydrated yet")
            return False

        before_notes = list(self.notes)
        before_folders = list(self.folders)
        started_at = now_iso()
        self.is_loading = True
        try:
            notes = await self.notes_sync.sync(
                user_id, before_notes, self.cursors.get(NOTES_TABLE)
            )
            folders = await self.folders_sync.sync(
                user_id, before_folders, self.cursors.get(FOLDERS_TABLE)
            )
        except Exception as e:
            self.errors[SYNC_ERROR_KEY] = str(e)
            logger.error(f"Sync failed: {e}", exc_info=not isinstance(e, RemoteError))
            return False
        finally:
            self.is_loading = False

        self.notes = self._reconcile(notes, before_notes, self.notes)
        self.folders = self._reconcile(folders, before_folders, self.folders)
        self.cursors[NOTES_TABLE] = started_at
        self.cursors[FOLDERS_TABLE] = started_at
        self.is_synced = True
        self.errors.pop(SYNC_ERROR_KEY, None)
        self._fallback_active()
        self._persist()
        return True

    async def flush_queue(self, user_id: str) -> FlushResult:
        """Replay the offline queue in order."""
        result = await self.queue.flush(user_id)
        if result.status == FlushStatus.SUCCESS:
            for kind in [k for k, v in self.errors.items() if v == QUEUED]:
                del self.errors[kind]
        elif result.status == FlushStatus.FAILED:
            # Stays queued; the rejection is reported against its kind
            self.errors[result.failed_kind] = result.error
        return result

    # ==================== Realtime ====================

    async def enable_realtime(self, user_id: str) -> None:
        """Open note and folder change feeds, replacing any open ones."""
        await self.disable_realtime()

        feeds = (
            (NOTES_TABLE, self.notes_sync, self._apply_note_events),
            (FOLDERS_TABLE, self.folders_sync, self._apply_folder_events),
        )
        for table, manager, handler in feeds:
            coalescer = EventCoalescer(self.debounce, handler, name=table)
            coalescer.start()
            self._coalescers[table] = coalescer
            self._subscriptions[table] = await manager.subscribe(user_id, coalescer.push)

        self.realtime_user_id = user_id
        logger.info(f"Realtime enabled for {user_id}")

    async def disable_realtime(self) -> None:
        managers = {NOTES_TABLE: self.notes_sync, FOLDERS_TABLE: self.folders_sync}
        for table, subscription in list(self._subscriptions.items()):
            await managers[table].unsubscribe(subscription)
        self._subscriptions.clear()

        for coalescer in self._coalescers.values():
            await coalescer.close()
        self._coalescers.clear()

        if self.realtime_user_id is not None:
            logger.info(f"Realtime disabled for {self.realtime_user_id}")
        self.realtime_user_id = None

    def _apply_note_events(self, batch: list[ChangeEvent]) -> None:
        for event in batch:
            index = self._note_index(event.record_id)
            if event.type == ChangeType.INSERT:
                # Own creates echo back; never duplicate
                if index is None and event.new:
                    self.notes.insert(0, row_to_note(event.new))
            elif event.type == ChangeType.UPDATE:
                if index is not None and event.new:
                    self.notes[index] = self.notes[index].merged(
                        **note_fields_from_row(event.new)
                    )
            elif event.type == ChangeType.DELETE:
                if index is not None:
                    self.notes.pop(index)
                    self._fallback_active()
        self._persist()

    def _apply_folder_events(self, batch: list[ChangeEvent]) -> None:
        for event in batch:
            index = self._folder_index(event.record_id)
            if event.type == ChangeType.INSERT:
                if index is None and event.new:
                    self.folders.append(row_to_folder(event.new))
            elif event.type == ChangeType.UPDATE:
                if index is not None and event.new:
                    self.folders[index] = self.folders[index].merged(
                        **folder_fields_from_row(event.new)
                    )
            elif event.type == ChangeType.DELETE:
                if index is not None:
                    removed = self.folders.pop(index)
                    self.expanded_folders.pop(removed.id, None)
        self._persist()

    # ==================== Lifecycle ====================

    async def settle(self) -> None:
        """Wait for background confirmations and buffered realtime events."""
        while self._confirmations:
            await asyncio.gather(*list(self._confirmations), return_exceptions=True)
        for subscription in list(self._subscriptions.values()):
            await subscription.drain()
        for coalescer in list(self._coalescers.values()):
            await coalescer.drain()

    async def reset(self) -> None:
        """Return to the signed-out default state."""
        await self.disable_realtime()
        await self.settle()
        self.queue.clear()
        self.notes = []
        self.folders = []
        self.active_note_id = None
        self.expanded_folders = {"root": True}
        self.cursors = {NOTES_TABLE: None, FOLDERS_TABLE: None}
        self.errors = {}
        self.is_synced = False
        if self._storage is not None:
            self._storage.clear()
        if self.seed_default_note:
            self._seed_default_note()
        self._persist()

    def status(self) -> dict[str, Any]:
        """Summary of local and sync state."""
        return {
            "notes": len(self.notes),
            "folders": len(self.folders),
            "active_note_id": self.active_note_id,
            "pending_operations": len(self.queue),
            "is_loading": self.is_loading,
            "is_synced": self.is_synced,
            "realtime_user_id": self.realtime_user_id,
            "cursors": dict(self.cursors),
            "errors": dict(self.errors),
        }
