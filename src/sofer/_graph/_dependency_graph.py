"""Dependency graph between script nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from ._algorithms import find_cycle

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable


T = TypeVar("T")


@dataclass(slots=True)
class DependencyGraph(Generic[T]):
    """A directed graph of "reads" relationships between nodes.

    The graph is derived state: it is rebuilt from each node's parsed script
    and may be discarded and recomputed at any time.

    The graph represents "reads" relationships:
    - reads[b] = {a} means "b's script reads a"
    - dependents[a] = {b} means "a is read by b"

    Unlike the outline tree the relation may contain cycles; they are reported
    by `cycle_check`, never rejected.

    Attributes:
        _reads: Mapping from node to the nodes its script reads.
        _dependents: Mapping from node to the nodes whose scripts read it.

    """

    _reads: dict[T, frozenset[T]] = field(default_factory=dict)
    _dependents: dict[T, frozenset[T]] = field(default_factory=dict)

    @property
    def nodes(self) -> frozenset[T]:
        """All nodes that appear in the graph."""
        return frozenset(self._reads.keys()) | frozenset(self._dependents.keys())

    def record_reads(self, node: T, reads: Iterable[T]) -> None:
        """Replace the read set of `node` in one step.

        Edges from the previous read set that are not in the new one are
        removed, so stale edges never survive a script edit.

        Args:
            node: The dependent node.
            reads: The complete new set of nodes it reads.

        """
        new_reads = frozenset(reads)
        old_reads = self._reads.get(node, frozenset())

        for gone in old_reads - new_reads:
            remaining = self._dependents.get(gone, frozenset()) - {node}
            if remaining:
                self._dependents[gone] = remaining
            else:
                self._dependents.pop(gone, None)
        for added in new_reads - old_reads:
            self._dependents[added] = self._dependents.get(added, frozenset()) | {node}

        if new_reads:
            self._reads[node] = new_reads
        else:
            self._reads.pop(node, None)

    def forget(self, node: T) -> None:
        """Remove a node and every edge that touches it.

        Nodes that used to read `node` keep their other edges; their scripts
        will report the missing node the next time they are resolved.
        """
        self.record_reads(node, ())
        for dependent in self._dependents.pop(node, frozenset()):
            remaining = self._reads.get(dependent, frozenset()) - {node}
            if remaining:
                self._reads[dependent] = remaining
            else:
                self._reads.pop(dependent, None)

    def reads(self, node: T) -> frozenset[T]:
        """Get the nodes that `node` directly reads."""
        return self._reads.get(node, frozenset())

    def dependents(self, node: T) -> frozenset[T]:
        """Get the nodes that directly read `node`."""
        return self._dependents.get(node, frozenset())

    def transitive_reads(self, node: T) -> frozenset[T]:
        """Get all nodes that `node` transitively reads."""
        return self._closure(node, self.reads)

    def transitive_dependents(self, node: T) -> frozenset[T]:
        """Get all nodes that transitively read `node`.

        This is the invalidation closure of an edit to `node` (excluding the
        node itself, unless it reads itself through a cycle).
        """
        return self._closure(node, self.dependents)

    @staticmethod
    def _closure(node: T, step: Callable[[T], frozenset[T]]) -> frozenset[T]:
        visited: set[T] = set()
        stack = list(step(node))
        while stack:
            current = stack.pop()
            if current not in visited:
                visited.add(current)
                stack.extend(step(current))
        return frozenset(visited)

    def cycle_check(self, node: T) -> list[T] | None:
        """Find a read cycle reachable from `node`.

        Uses depth-first traversal with a recursion-stack marker: a node that
        is met again while it is still being visited closes a cycle.

        Returns:
            The cycle path (first and last element equal) or None.

        """
        return find_cycle(node, lambda n: sorted(self.reads(n), key=str))

    def find_cycles(self) -> list[list[T]]:
        """Return one cycle path per distinct cycle found in the graph."""
        cycles: list[list[T]] = []
        seen: set[frozenset[T]] = set()
        for node in sorted(self._reads, key=str):
            cycle = self.cycle_check(node)
            if cycle is None:
                continue
            members = frozenset(cycle)
            if members not in seen:
                seen.add(members)
                cycles.append(cycle)
        return cycles

    def __len__(self) -> int:
        """Return the number of nodes in the graph."""
        return len(self.nodes)

    def __contains__(self, node: T) -> bool:
        """Check if a node is in the graph."""
        return node in self._reads or node in self._dependents
