"""Contract between the evaluator and a script evaluator.

A script evaluator turns node text into a `ParsedScript` carrying an explicit
read declaration, then executes it against a read-only snapshot of the nodes
it declared. It never touches the outline: writes are returned as mutation
requests and applied by the evaluator afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, runtime_checkable

from sofer._node import NO_VALUE

if TYPE_CHECKING:
    import threading
    from collections.abc import Mapping

    from sofer._node import MetaValue


# =============================================================================
# Read declarations
# =============================================================================


@dataclass(frozen=True, slots=True)
class ReadChildren:
    """Read every child of the script's node."""

    key: str | None = None


@dataclass(frozen=True, slots=True)
class ReadChild:
    """Read the child at `position` (negative positions count from the end)."""

    position: int
    key: str | None = None


@dataclass(frozen=True, slots=True)
class ReadNode:
    """Read an arbitrary node by id."""

    node_id: str
    key: str | None = None


ReadDeclaration: TypeAlias = ReadChildren | ReadChild | ReadNode


@dataclass(frozen=True, slots=True)
class ParsedScript:
    """Executable form of a node's script.

    Attributes:
        label: Text before the script marker, shown in front of the value.
        source: The script source after the marker.
        reads: What the script reads, known without running it.
        body: Evaluator-specific executable form.

    """

    label: str
    source: str
    reads: frozenset[ReadDeclaration]
    body: Any = field(compare=False, repr=False, default=None)


# =============================================================================
# Execution inputs and outputs
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeView:
    """Read-only view of a node inside a script."""

    id: str
    text: str
    value: Any = NO_VALUE
    meta: Mapping[str, MetaValue] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class ScriptInputs:
    """Snapshot handed to a script.

    Attributes:
        own: The script's own node (text and metadata, no value).
        nodes: Views of every declared node, keyed by id.
        children: Ids of the own node's children in sibling order.

    """

    own: NodeView
    nodes: Mapping[str, NodeView] = field(default_factory=lambda: MappingProxyType({}))
    children: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SetText:
    target: str
    text: str


@dataclass(frozen=True, slots=True)
class SetMetadata:
    target: str
    key: str
    value: MetaValue


@dataclass(frozen=True, slots=True)
class RemoveMetadata:
    target: str
    key: str


MutationRequest: TypeAlias = SetText | SetMetadata | RemoveMetadata


@dataclass(frozen=True, slots=True)
class ScriptOutcome:
    """Value produced by a script plus the writes it asks for."""

    value: Any
    mutations: tuple[MutationRequest, ...] = ()


@dataclass(frozen=True, slots=True)
class ExecutionLimits:
    """Resource bounds for one script execution.

    Attributes:
        step_limit: Maximum number of interpreter steps.
        time_limit: Wall-clock limit in seconds, or None for no limit.

    """

    step_limit: int = 100_000
    time_limit: float | None = 2.0


@runtime_checkable
class ScriptEvaluator(Protocol):
    """Protocol every script language plugged into the engine satisfies."""

    def parse(self, text: str) -> ParsedScript | None:
        """Parse node text.

        Returns:
            The parsed script, or None when the text holds no script (the
            node's value is then its literal text).

        Raises:
            ScriptParseError: If the script is malformed.

        """
        ...

    def execute(
        self,
        script: ParsedScript,
        inputs: ScriptInputs,
        *,
        limits: ExecutionLimits,
        cancel: threading.Event | None = None,
    ) -> ScriptOutcome:
        """Run a parsed script against a snapshot.

        Raises:
            ScriptTimeoutError: If a limit is exceeded.
            ScriptRuntimeError: If the script fails.
            EvaluationCancelledError: If `cancel` is set during execution.

        """
        ...
