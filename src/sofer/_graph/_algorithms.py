"""Graph algorithms shared by the outline tree and the script dependency graph.

Both functions take a callable returning the successors of a node. The same
utilities validate structural moves (tree edges) and detect script cycles
(read edges).
"""

from collections.abc import Callable, Hashable, Iterable, Iterator
from typing import TypeVar

T = TypeVar("T", bound=Hashable)


def find_cycle(
    start: T,
    successors: Callable[[T], Iterable[T]],
) -> list[T] | None:
    """Find a cycle reachable from `start` by depth-first traversal.

    A node that is found again while it is still on the active recursion
    stack closes a cycle. The traversal is iterative so deep outlines do not
    hit the interpreter recursion limit.

    Args:
        start: Node to start from.
        successors: Function returning the successors of a node.

    Returns:
        The cycle as a list of nodes where the first and last element are the
        same node, or None if no cycle is reachable.

    Example:
        >>> edges = {"a": ["b"], "b": ["c"], "c": ["b"]}
        >>> find_cycle("a", lambda n: edges.get(n, []))
        ['b', 'c', 'b']

    """
    on_stack: set[T] = set()
    done: set[T] = set()
    path: list[T] = []
    # Each frame holds a node and the iterator over its remaining successors
    frames: list[tuple[T, Iterator[T]]] = []

    def push(node: T) -> None:
        on_stack.add(node)
        path.append(node)
        frames.append((node, iter(list(successors(node)))))

    push(start)
    while frames:
        node, pending = frames[-1]
        advanced = False
        for nxt in pending:
            if nxt in on_stack:
                return [*path[path.index(nxt) :], nxt]
            if nxt not in done:
                push(nxt)
                advanced = True
                break
        if not advanced:
            frames.pop()
            path.pop()
            on_stack.discard(node)
            done.add(node)
    return None


def is_reachable(
    source: T,
    target: T,
    successors: Callable[[T], Iterable[T]],
) -> bool:
    """Check whether `target` can be reached from `source` (or is `source`).

    Args:
        source: Node to start from.
        target: Node to look for.
        successors: Function returning the successors of a node.

    Returns:
        True if a path exists from source to target.

    """
    if source == target:
        return True
    visited: set[T] = {source}
    stack = list(successors(source))
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current not in visited:
            visited.add(current)
            stack.extend(successors(current))
    return False
