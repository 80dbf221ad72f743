"""Iterative traversal over the folder parent relation."""

from collections import deque

from ..models import Folder


class FolderCycleError(ValueError):
    """Reparenting would make a folder its own ancestor."""


class FolderTree:
    """Parent and children indexes built from a flat folder list."""

    def __init__(self, folders: list[Folder]):
        self.parent_of: dict[str, str | None] = {}
        self.children_of: dict[str | None, list[str]] = {}
        for folder in folders:
            self.parent_of[folder.id] = folder.parent_id
            self.children_of.setdefault(folder.parent_id, []).append(folder.id)

    def __contains__(self, folder_id: object) -> bool:
        return folder_id in self.parent_of

    def descendants(self, folder_id: str) -> list[str]:
        """The folder and every folder below it, breadth first."""
        closure: list[str] = []
        seen: set[str] = set()
        pending = deque([folder_id])
        while pending:
            current = pending.popleft()
            if current in seen:
                continue
            seen.add(current)
            closure.append(current)
            pending.extend(self.children_of.get(current, []))
        return closure

    def ancestors(self, folder_id: str) -> list[str]:
        """Parent chain from the folder's parent up to a root."""
        chain: list[str] = []
        seen = {folder_id}
        current = self.parent_of.get(folder_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self.parent_of.get(current)
        return chain

    def would_create_cycle(self, folder_id: str, new_parent_id: str | None) -> bool:
        """True if moving folder_id under new_parent_id closes a loop."""
        if new_parent_id is None:
            return False
        if new_parent_id == folder_id:
            return True
        return folder_id in self.ancestors(new_parent_id)

    def check_move(self, folder_id: str, new_parent_id: str | None) -> None:
        if self.would_create_cycle(folder_id, new_parent_id):
            raise FolderCycleError(
                f"Cannot move folder {folder_id} under its descendant {new_parent_id}"
            )
