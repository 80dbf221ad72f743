"""Local state for Notesync clients.

Provides:
- The note and folder store with optimistic, two-phase mutations
- Settings values and their definitions
- SQLite persistence used to start offline
"""

from .folder_tree import FolderCycleError, FolderTree
from .note_store import Mutation, MutationOutcome, NoteStore
from .persistence import StateStorage, StoreSnapshot
from .settings_store import SettingDefinition, SettingsStore

__all__ = [
    "FolderCycleError",
    "FolderTree",
    "Mutation",
    "MutationOutcome",
    "NoteStore",
    "StateStorage",
    "StoreSnapshot",
    "SettingDefinition",
    "SettingsStore",
]
