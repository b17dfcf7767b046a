"""Tests for the node store."""

import pytest

from sofer import ChangeKind, CycleRejectedError, NodeRef, NodeState, NotFoundError, Outline


@pytest.fixture
def outline() -> Outline:
    return Outline()


class TestCreateNode:
    """Tests for Outline.create_node."""

    def test_create_root(self, outline: Outline) -> None:
        node = outline.create_node()
        assert node.is_root
        assert node.text == ""
        assert node.metadata == {}
        assert outline.roots() == (node.id,)

    def test_ids_are_unique(self, outline: Outline) -> None:
        ids = {outline.create_node().id for _ in range(100)}
        assert len(ids) == 100

    def test_create_child_at_position(self, outline: Outline) -> None:
        root = outline.create_node()
        first = outline.create_node(root.id)
        last = outline.create_node(root.id)
        middle = outline.create_node(root.id, 1)
        assert outline.children(root.id) == (first.id, middle.id, last.id)
        assert outline.position_of(middle.id) == 1
        assert outline.parent(middle.id) == root.id

    def test_missing_parent(self, outline: Outline) -> None:
        with pytest.raises(NotFoundError, match="does not exist"):
            outline.create_node("nope")

    def test_explicit_id(self, outline: Outline) -> None:
        node = outline.create_node(node_id="fixed")
        assert node.id == "fixed"
        with pytest.raises(ValueError, match="already in use"):
            outline.create_node(node_id="fixed")

    def test_new_node_is_dirty_and_logged(self, outline: Outline) -> None:
        root = outline.create_node()
        child = outline.create_node(root.id)
        assert child.state is NodeState.DIRTY
        changes = outline.drain_changes()
        assert changes[child.id] == {ChangeKind.CREATED}
        assert changes[root.id] == {ChangeKind.CREATED, ChangeKind.STRUCTURE}
        assert not outline.has_changes


class TestDeleteNode:
    """Tests for Outline.delete_node."""

    def test_removes_whole_subtree(self, outline: Outline) -> None:
        root = outline.create_node()
        child = outline.create_node(root.id)
        grandchild = outline.create_node(child.id)
        removed = outline.delete_node(child.id)
        assert removed == [child.id, grandchild.id]
        assert child.id not in outline
        assert grandchild.id not in outline
        assert outline.children(root.id) == ()

    def test_deleted_ids_are_retired(self, outline: Outline) -> None:
        node = outline.create_node()
        outline.delete_node(node.id)
        assert outline.is_retired(node.id)
        with pytest.raises(NotFoundError, match="was deleted"):
            outline.get(node.id)
        with pytest.raises(ValueError, match="used before"):
            outline.create_node(node_id=node.id)

    def test_missing_node(self, outline: Outline) -> None:
        with pytest.raises(NotFoundError):
            outline.delete_node("nope")

    def test_change_log_marks_deleted(self, outline: Outline) -> None:
        root = outline.create_node()
        child = outline.create_node(root.id)
        outline.drain_changes()
        outline.delete_node(child.id)
        changes = outline.drain_changes()
        assert changes == {root.id: {ChangeKind.STRUCTURE}, child.id: {ChangeKind.DELETED}}


class TestMoveNode:
    """Tests for Outline.move_node."""

    def test_move_between_parents(self, outline: Outline) -> None:
        a = outline.create_node()
        b = outline.create_node()
        child = outline.create_node(a.id)
        outline.move_node(child.id, b.id)
        assert outline.children(a.id) == ()
        assert outline.children(b.id) == (child.id,)
        assert outline.parent(child.id) == b.id

    def test_move_to_root(self, outline: Outline) -> None:
        a = outline.create_node()
        child = outline.create_node(a.id)
        outline.move_node(child.id, None, 0)
        assert outline.roots() == (child.id, a.id)
        assert outline.get(child.id).is_root

    def test_reorder_siblings(self, outline: Outline) -> None:
        root = outline.create_node()
        first = outline.create_node(root.id)
        second = outline.create_node(root.id)
        outline.move_node(second.id, root.id, 0)
        assert outline.children(root.id) == (second.id, first.id)

    def test_move_under_descendant_is_rejected(self, outline: Outline) -> None:
        root = outline.create_node()
        child = outline.create_node(root.id)
        grandchild = outline.create_node(child.id)
        with pytest.raises(CycleRejectedError):
            outline.move_node(root.id, grandchild.id)
        assert outline.roots() == (root.id,)
        assert outline.children(child.id) == (grandchild.id,)

    def test_move_under_itself_is_rejected(self, outline: Outline) -> None:
        node = outline.create_node()
        with pytest.raises(CycleRejectedError):
            outline.move_node(node.id, node.id)


class TestTextAndMetadata:
    """Tests for text and metadata writes."""

    def test_set_text(self, outline: Outline) -> None:
        node = outline.create_node()
        outline.drain_changes()
        outline.set_text(node.id, "hello")
        assert outline.get(node.id).text == "hello"
        assert outline.drain_changes() == {node.id: {ChangeKind.TEXT}}

    def test_set_and_remove_metadata(self, outline: Outline) -> None:
        node = outline.create_node()
        outline.set_metadata(node.id, "count", 3)
        outline.set_metadata(node.id, "owner", NodeRef("abc"))
        assert outline.get(node.id).metadata == {"count": 3, "owner": NodeRef("abc")}
        outline.remove_metadata(node.id, "count")
        assert "count" not in outline.get(node.id).metadata

    def test_unsupported_metadata_value(self, outline: Outline) -> None:
        node = outline.create_node()
        with pytest.raises(TypeError, match="Unsupported metadata value"):
            outline.set_metadata(node.id, "items", [1, 2])  # type: ignore[arg-type]

    def test_setting_required_field_clears_requirement(self, outline: Outline) -> None:
        node = outline.create_node()
        outline.mark_required(node.id, "due")
        assert outline.get(node.id).required == {"due"}
        outline.set_metadata(node.id, "due", "tomorrow")
        assert outline.get(node.id).required == set()

    def test_write_marks_node_dirty(self, outline: Outline) -> None:
        node = outline.create_node()
        node.state = NodeState.CLEAN
        outline.set_metadata(node.id, "k", True)
        assert node.state is NodeState.DIRTY


class TestWalk:
    """Tests for pre-order traversal."""

    def test_preorder_preserves_sibling_order(self, outline: Outline) -> None:
        a = outline.create_node(text="a")
        a1 = outline.create_node(a.id, text="a1")
        outline.create_node(a1.id, text="a1x")
        outline.create_node(a.id, text="a2")
        outline.create_node(text="b")
        assert [node.text for node in outline.walk()] == ["a", "a1", "a1x", "a2", "b"]
        assert [node.text for node in outline.walk(a1.id)] == ["a1", "a1x"]
