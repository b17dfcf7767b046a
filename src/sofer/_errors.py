"""Exception taxonomy and per-node error conditions.

Structural misuse of the outline raises synchronously to the caller.
Script-related failures never escape an evaluation pass; they are captured
per node as `NodeError` values.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum, auto


class SoferError(Exception):
    """Base class for all sofer errors."""


class NotFoundError(SoferError, LookupError):
    """Raised when an id refers to a node that does not exist (or was deleted)."""

    def __init__(self, node_id: str, *, retired: bool = False, message: str | None = None) -> None:
        self.node_id = node_id
        self.retired = retired
        if message is None:
            reason = "was deleted" if retired else "does not exist"
            message = f"Node '{node_id}' {reason}"
        super().__init__(message)


class CycleRejectedError(SoferError):
    """Raised when a move would make a node its own ancestor."""

    def __init__(self, node_id: str, new_parent_id: str) -> None:
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(f"Cannot move node '{node_id}' under '{new_parent_id}': it is inside the moved subtree")


class ScriptError(SoferError):
    """Base class for failures of a single script."""


class ScriptParseError(ScriptError):
    """The script text is malformed or uses disallowed syntax."""


class ScriptTimeoutError(ScriptError, TimeoutError):
    """The script exceeded its step or wall-clock limit."""


class ScriptRuntimeError(ScriptError):
    """The script raised while executing."""


class EvaluationCancelledError(SoferError):
    """An evaluation pass was cancelled while a script was running."""


class TemplateError(SoferError):
    """Invalid template definition or unknown template id."""


class SessionClosedError(SoferError):
    """The outline session was closed."""


class FormatError(SoferError):
    """Malformed persisted outline."""


class ConfigError(SoferError):
    """Invalid [tool.sofer] configuration."""


class ErrorKind(StrEnum):
    """Why a node failed to produce a value."""

    PARSE = auto()
    TIMEOUT = auto()
    RUNTIME = auto()
    NOT_FOUND = auto()
    CYCLE = auto()


@dataclass(frozen=True, slots=True)
class NodeError:
    """Error condition attached to a node after evaluation."""

    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: Exception) -> NodeError:
        """Classify an exception raised while preparing or running a script."""
        match exc:
            case ScriptParseError():
                kind = ErrorKind.PARSE
            case ScriptTimeoutError():
                kind = ErrorKind.TIMEOUT
            case NotFoundError():
                kind = ErrorKind.NOT_FOUND
            case _:
                kind = ErrorKind.RUNTIME
        return cls(kind=kind, message=str(exc))

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass(frozen=True, slots=True)
class MutationLoopLimit:
    """Reported when script-driven mutations keep re-dirtying the outline.

    Attributes:
        rounds: Number of additional rounds that were run before stopping.
        dropped: Ids of the nodes whose mutation requests were not applied.

    """

    rounds: int
    dropped: tuple[str, ...]
