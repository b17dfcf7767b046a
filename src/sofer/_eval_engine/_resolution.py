"""Read resolution utilities for the evaluation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from sofer._errors import NotFoundError
from sofer._node import NO_VALUE, NodeRef
from sofer._script import NodeView, ReadChild, ReadChildren, ReadNode, ScriptInputs

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sofer._node import Node
    from sofer._outline import Outline
    from sofer._script import ReadDeclaration


@dataclass(frozen=True, slots=True)
class ResolvedReads:
    """Read declarations of one script mapped onto concrete node ids.

    Attributes:
        node_ids: Every node the script reads.
        keys: Metadata keys visible per node id. None means all metadata.
        missing: Declarations that point at nothing (deleted node, child
            position out of range), and visible node references whose
            target is gone.
        watched: Ids whose creation or deletion changes what the script
            sees: missing `node(...)` targets and the targets of visible
            node references.

    """

    node_ids: frozenset[str] = frozenset()
    keys: Mapping[str, frozenset[str] | None] = field(default_factory=dict)
    missing: tuple[NotFoundError, ...] = ()
    watched: frozenset[str] = frozenset()


def resolve_reads(outline: Outline, owner_id: str, reads: Iterable[ReadDeclaration]) -> ResolvedReads:
    """Resolve read declarations against the current outline.

    Args:
        outline: The outline the script lives in.
        owner_id: Id of the node whose script declared the reads.
        reads: The declarations returned by parsing.

    Returns:
        The resolved ids. Unresolvable declarations are collected in
        `missing` instead of raising, so the resolved part can still be
        recorded in the dependency graph.

    """
    children = outline.children(owner_id)
    keys: dict[str, set[str] | None] = {}
    missing: list[NotFoundError] = []
    watched: set[str] = set()

    def add(node_id: str, key: str | None) -> None:
        if key is None:
            keys[node_id] = None
            return
        current = keys.setdefault(node_id, set())
        if current is not None:
            current.add(key)

    for declaration in sorted(reads, key=repr):
        match declaration:
            case ReadChildren(key=key):
                for child_id in children:
                    add(child_id, key)
            case ReadChild(position=position, key=key):
                if -len(children) <= position < len(children):
                    add(children[position], key)
                else:
                    msg = f"Node '{owner_id}' has no child at position {position}"
                    missing.append(NotFoundError(owner_id, message=msg))
            case ReadNode(node_id=node_id, key=key):
                if node_id in outline:
                    add(node_id, key)
                else:
                    missing.append(NotFoundError(node_id, retired=outline.is_retired(node_id)))
                    watched.add(node_id)

    visible = [(owner_id, None), *((node_id, names) for node_id, names in keys.items())]
    for node_id, names in visible:
        for key, value in outline.get(node_id).metadata.items():
            if not isinstance(value, NodeRef) or (names is not None and key not in names):
                continue
            watched.add(value.target)
            if value.target not in outline:
                retired = outline.is_retired(value.target)
                reason = "was deleted" if retired else "does not exist"
                msg = f"Metadata '{key}' of node '{node_id}' refers to node '{value.target}', which {reason}"
                missing.append(NotFoundError(value.target, retired=retired, message=msg))

    return ResolvedReads(
        node_ids=frozenset(keys),
        keys={node_id: None if names is None else frozenset(names) for node_id, names in keys.items()},
        missing=tuple(missing),
        watched=frozenset(watched),
    )


def node_view(node: Node, keys: frozenset[str] | None = None, *, with_value: bool = True) -> NodeView:
    """Build the read-only view of a node handed to scripts."""
    if keys is None:
        meta = dict(node.metadata)
    else:
        meta = {key: value for key, value in node.metadata.items() if key in keys}
    return NodeView(
        id=node.id,
        text=node.text,
        value=node.value if with_value else NO_VALUE,
        meta=MappingProxyType(meta),
    )


def build_inputs(outline: Outline, owner_id: str, resolved: ResolvedReads) -> ScriptInputs:
    """Snapshot the declared nodes for one script execution."""
    owner = outline.get(owner_id)
    return ScriptInputs(
        own=node_view(owner, with_value=False),
        nodes=MappingProxyType(
            {node_id: node_view(outline.get(node_id), keys) for node_id, keys in resolved.keys.items()},
        ),
        children=tuple(owner.children),
    )
