"""The node store: outline tree and metadata, no computation."""

from __future__ import annotations

import logging
from enum import StrEnum, auto
from typing import TYPE_CHECKING

from ._errors import CycleRejectedError, NotFoundError
from ._graph import is_reachable
from ._node import Node, NodeState, check_meta_value, new_node_id

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ._node import MetaValue

logger = logging.getLogger(__name__)


class ChangeKind(StrEnum):
    """What kind of write touched a node since the last evaluation."""

    CREATED = auto()
    TEXT = auto()
    METADATA = auto()
    STRUCTURE = auto()  # Children were added, removed or reordered
    DELETED = auto()


class Outline:
    """A forest of nodes plus the global id -> node table.

    The parent/children relation always forms a tree: moves that would put a
    node inside its own subtree are rejected. Every write marks the touched
    node dirty and is recorded in a change log that the evaluator drains.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._roots: list[str] = []
        self._retired: set[str] = set()
        self._changes: dict[str, set[ChangeKind]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            NotFoundError: If the node does not exist.

        """
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFoundError(node_id, retired=node_id in self._retired) from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def is_retired(self, node_id: str) -> bool:
        """Check whether the id belonged to a node that has been deleted."""
        return node_id in self._retired

    def roots(self) -> tuple[str, ...]:
        return tuple(self._roots)

    def children(self, node_id: str | None) -> tuple[str, ...]:
        """Ordered child ids of a node, or the roots when `node_id` is None."""
        if node_id is None:
            return self.roots()
        return tuple(self.get(node_id).children)

    def parent(self, node_id: str) -> str | None:
        return self.get(node_id).parent_id

    def position_of(self, node_id: str) -> int:
        """Index of the node among its siblings."""
        return self._siblings(self.get(node_id).parent_id).index(node_id)

    def walk(self, start: str | None = None) -> Iterator[Node]:
        """Iterate nodes in pre-order, preserving sibling order.

        Args:
            start: Root of the subtree to walk. Walks the whole forest if None.

        """
        stack = [start] if start is not None else list(reversed(self._roots))
        while stack:
            node = self.get(stack.pop())
            yield node
            stack.extend(reversed(node.children))

    def subtree(self, node_id: str) -> list[str]:
        """Ids of the node and all of its descendants, in pre-order."""
        return [node.id for node in self.walk(node_id)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_node(
        self,
        parent_id: str | None = None,
        position: int | None = None,
        *,
        text: str = "",
        node_id: str | None = None,
    ) -> Node:
        """Create a new empty node.

        Args:
            parent_id: Parent node id, or None to create a root.
            position: Index among the siblings. Appends when None.
            text: Initial text.
            node_id: Explicit id (used when loading persisted outlines).
                Must not be in use and must not have been deleted before.

        Returns:
            The new node.

        Raises:
            NotFoundError: If the parent does not exist.
            ValueError: If an explicit id is already taken or was retired.

        """
        siblings = self._siblings(parent_id)
        if node_id is None:
            node_id = new_node_id()
        elif node_id in self._nodes or node_id in self._retired:
            msg = f"Node id '{node_id}' is already in use or was used before"
            raise ValueError(msg)

        node = Node(id=node_id, text=text, parent_id=parent_id)
        self._nodes[node_id] = node
        _insert(siblings, position, node_id)

        self._record(node_id, ChangeKind.CREATED)
        if parent_id is not None:
            self._record(parent_id, ChangeKind.STRUCTURE)
        logger.debug("Created node %s under %s", node_id, parent_id)
        return node

    def delete_node(self, node_id: str) -> list[str]:
        """Delete a node and its whole subtree.

        Removed ids are retired: they are never reused and later references
        to them fail with `NotFoundError`.

        Returns:
            The removed ids in pre-order.

        """
        node = self.get(node_id)
        removed = self.subtree(node_id)

        self._siblings(node.parent_id).remove(node_id)
        if node.parent_id is not None:
            self._record(node.parent_id, ChangeKind.STRUCTURE)

        for removed_id in removed:
            del self._nodes[removed_id]
            self._retired.add(removed_id)
            self._changes[removed_id] = {ChangeKind.DELETED}

        logger.debug("Deleted %d node(s) rooted at %s", len(removed), node_id)
        return removed

    def move_node(self, node_id: str, new_parent_id: str | None, position: int | None = None) -> None:
        """Move a node (with its subtree) under a new parent.

        Raises:
            NotFoundError: If either node does not exist.
            CycleRejectedError: If the new parent is the node itself or one of
                its descendants. The tree is left unchanged.

        """
        node = self.get(node_id)
        new_siblings = self._siblings(new_parent_id)
        if new_parent_id is not None and is_reachable(
            node_id,
            new_parent_id,
            lambda n: self._nodes[n].children,
        ):
            raise CycleRejectedError(node_id, new_parent_id)

        old_parent_id = node.parent_id
        self._siblings(old_parent_id).remove(node_id)
        _insert(new_siblings, position, node_id)
        node.parent_id = new_parent_id

        self._record(node_id, ChangeKind.STRUCTURE)
        for parent_id in (old_parent_id, new_parent_id):
            if parent_id is not None:
                self._record(parent_id, ChangeKind.STRUCTURE)

    def set_text(self, node_id: str, text: str) -> None:
        node = self.get(node_id)
        node.text = text
        self._record(node_id, ChangeKind.TEXT)

    def set_metadata(self, node_id: str, key: str, value: MetaValue) -> None:
        """Set a metadata field.

        Setting a field that a template left as required clears the
        requirement.

        Raises:
            NotFoundError: If the node does not exist.
            TypeError: If the value is not a supported metadata type.

        """
        node = self.get(node_id)
        check_meta_value(key, value)
        node.metadata[key] = value
        node.required.discard(key)
        self._record(node_id, ChangeKind.METADATA)

    def remove_metadata(self, node_id: str, key: str) -> None:
        """Remove a metadata field. Removing a missing key is a no-op write."""
        node = self.get(node_id)
        node.metadata.pop(key, None)
        self._record(node_id, ChangeKind.METADATA)

    def mark_required(self, node_id: str, key: str) -> None:
        """Flag a metadata field as required but not yet provided."""
        node = self.get(node_id)
        if key not in node.metadata:
            node.required.add(key)

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------

    def drain_changes(self) -> dict[str, set[ChangeKind]]:
        """Return and clear the writes recorded since the last drain."""
        changes, self._changes = self._changes, {}
        return changes

    @property
    def has_changes(self) -> bool:
        return bool(self._changes)

    def _record(self, node_id: str, kind: ChangeKind) -> None:
        self._changes.setdefault(node_id, set()).add(kind)
        self._nodes[node_id].state = NodeState.DIRTY

    def _siblings(self, parent_id: str | None) -> list[str]:
        if parent_id is None:
            return self._roots
        return self.get(parent_id).children


def _insert(siblings: list[str], position: int | None, node_id: str) -> None:
    if position is None:
        siblings.append(node_id)
    else:
        siblings.insert(position, node_id)
