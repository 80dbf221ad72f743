"""Tests for folder tree traversal."""

import pytest

from notesync.models import Folder
from notesync.store.folder_tree import FolderCycleError, FolderTree


@pytest.fixture
def tree():
    """Create a small tree: a -> (b -> d), c."""
    return FolderTree(
        [
            Folder(id="a", name="A"),
            Folder(id="b", name="B", parent_id="a"),
            Folder(id="c", name="C", parent_id="a"),
            Folder(id="d", name="D", parent_id="b"),
            Folder(id="e", name="E"),
        ]
    )


class TestFolderTree:
    """Tests for FolderTree."""

    def test_descendants_include_self(self, tree):
        """Test the closure contains the folder and everything below it."""
        assert set(tree.descendants("a")) == {"a", "b", "c", "d"}
        assert tree.descendants("d") == ["d"]

    def test_descendants_breadth_first(self, tree):
        """Test the folder itself comes first."""
        assert tree.descendants("a")[0] == "a"

    def test_ancestors(self, tree):
        """Test the parent chain up to the root."""
        assert tree.ancestors("d") == ["b", "a"]
        assert tree.ancestors("e") == []

    def test_would_create_cycle(self, tree):
        """Test moves under self or a descendant are cycles."""
        assert tree.would_create_cycle("a", "a")
        assert tree.would_create_cycle("a", "d")
        assert not tree.would_create_cycle("d", "c")
        assert not tree.would_create_cycle("b", None)

    def test_check_move_raises(self, tree):
        """Test check_move rejects cycles."""
        with pytest.raises(FolderCycleError):
            tree.check_move("b", "d")

    def test_deep_chain_is_iterative(self):
        """Test very deep trees do not hit the recursion limit."""
        depth = 5000
        folders = [Folder(id="f0", name="root")] + [
            Folder(id=f"f{i}", name=str(i), parent_id=f"f{i - 1}")
            for i in range(1, depth)
        ]
        tree = FolderTree(folders)

        assert len(tree.descendants("f0")) == depth
        assert len(tree.ancestors(f"f{depth - 1}")) == depth - 1

    def test_existing_cycle_terminates(self):
        """Test corrupt parent links do not loop forever."""
        tree = FolderTree(
            [Folder(id="x", name="X", parent_id="y"), Folder(id="y", name="Y", parent_id="x")]
        )

        assert set(tree.descendants("x")) == {"x", "y"}
        assert tree.ancestors("x") == ["y"]
