"""Node data model."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum, auto
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final, TypeAlias

if TYPE_CHECKING:
    from ._errors import NodeError


@dataclass(frozen=True, slots=True)
class NodeRef:
    """Metadata value referring to another node by id."""

    target: str

    def __str__(self) -> str:
        return f"#{self.target}"


MetaValue: TypeAlias = str | int | float | bool | NodeRef

META_VALUE_TYPES: Final = (str, int, float, bool, NodeRef)


class _NoValue:
    """Marker for "this node has no computed value"."""

    _instance: _NoValue | None = None

    def __new__(cls) -> _NoValue:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_VALUE"

    def __bool__(self) -> bool:
        return False


NO_VALUE: Final = _NoValue()


class NodeState(StrEnum):
    """Evaluation state of a node."""

    CLEAN = auto()  # Computed value is consistent with current inputs
    DIRTY = auto()  # An input changed, value is stale
    EVALUATING = auto()  # Currently inside the script sandbox
    CYCLE_ERROR = auto()  # Aborted, a dependency cycle runs through this node
    SCRIPT_ERROR = auto()  # Script failed, last good value (if any) retained


def new_node_id() -> str:
    """Generate a fresh opaque node id."""
    return uuid.uuid4().hex


def check_meta_value(key: str, value: object) -> None:
    """Validate a metadata key/value pair.

    Raises:
        TypeError: If the key is not a non-empty string or the value is not
            one of the tagged metadata types.

    """
    if not isinstance(key, str) or not key:
        msg = f"Metadata key must be a non-empty string, got {key!r}"
        raise TypeError(msg)
    if not isinstance(value, META_VALUE_TYPES):
        msg = f"Unsupported metadata value for '{key}': {type(value).__name__}"
        raise TypeError(msg)


@dataclass(slots=True)
class Node:
    """A single outline entry.

    Nodes are owned by the `Outline`. `parent_id` is a back reference that is
    resolved through the outline's id table, never a second owner.
    The evaluation fields (`value`, `state`, `error`, `version`) are derived
    state maintained by the evaluator.
    """

    id: str
    text: str = ""
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    metadata: dict[str, MetaValue] = field(default_factory=dict)
    required: set[str] = field(default_factory=set)
    value: Any = NO_VALUE
    state: NodeState = NodeState.DIRTY
    error: NodeError | None = None
    version: int = 0

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def has_value(self) -> bool:
        return self.value is not NO_VALUE


@dataclass(frozen=True, slots=True)
class NodeInfo:
    """Read-only snapshot of a node returned by the query API."""

    id: str
    text: str
    parent_id: str | None
    children: tuple[str, ...]
    metadata: MappingProxyType[str, MetaValue]
    required: frozenset[str]
    value: Any
    state: NodeState
    error: NodeError | None
    version: int

    @classmethod
    def of(cls, node: Node) -> NodeInfo:
        return cls(
            id=node.id,
            text=node.text,
            parent_id=node.parent_id,
            children=tuple(node.children),
            metadata=MappingProxyType(dict(node.metadata)),
            required=frozenset(node.required),
            value=node.value,
            state=node.state,
            error=node.error,
            version=node.version,
        )
