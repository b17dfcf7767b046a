"""Outline session: the single-writer entry point used by front-ends."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from ._errors import SessionClosedError
from ._eval_engine import EvaluationReport, Evaluator
from ._node import NO_VALUE, NodeInfo
from ._outline import Outline
from ._script import split_script
from ._template import TemplateRegistry, apply_template, expand

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ._config import EngineConfig
    from ._node import MetaValue, Node
    from ._script import ScriptEvaluator
    from ._template import TemplateDefinition

logger = logging.getLogger(__name__)


def rendered_text(node: Node | NodeInfo) -> str:
    """Text shown for a node: its label followed by the computed value.

    Nodes without a script render as their text. A script node without a
    value yet renders as its label.
    """
    parts = split_script(node.text)
    if parts is None:
        return node.text
    label, _ = parts
    if node.value is NO_VALUE:
        return label.rstrip()
    return f"{label}{node.value}"


class OutlineSession:
    """One outline with its evaluator and templates behind a single lock.

    Every write and every evaluation pass is serialized. Writes made inside
    `batch()` are evaluated once, when the outermost batch exits; writes made
    outside a batch are evaluated immediately.

    Example:
        >>> with OutlineSession() as session:
        ...     with session.batch():
        ...         root = session.create_node(text="total @ sum(c.meta['n'] for c in children)")
        ...         child = session.create_node(root)
        ...         session.set_metadata(child, "n", 3)
        ...     session.get(root).value
        3

    """

    def __init__(
        self,
        outline: Outline | None = None,
        *,
        scripts: ScriptEvaluator | None = None,
        config: EngineConfig | None = None,
        templates: TemplateRegistry | None = None,
    ) -> None:
        self._outline = outline if outline is not None else Outline()
        self._evaluator = Evaluator(self._outline, scripts, config)
        self._templates = templates if templates is not None else TemplateRegistry()
        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._depth = 0
        self._closed = False
        self.last_report: EvaluationReport | None = None

    def __enter__(self) -> OutlineSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def outline(self) -> Outline:
        return self._outline

    @property
    def evaluator(self) -> Evaluator:
        return self._evaluator

    @property
    def templates(self) -> TemplateRegistry:
        return self._templates

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Batching and evaluation
    # ------------------------------------------------------------------

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group writes; evaluate incrementally once the outermost batch exits.

        If the block raises, the writes made so far stay applied and are
        evaluated before the exception propagates.
        """
        with self._lock:
            self._check_open()
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and not self._closed:
                    self._evaluate_pending()

    def evaluate(self) -> EvaluationReport:
        """Run a full evaluation pass."""
        with self._lock:
            self._check_open()
            self.last_report = self._evaluator.evaluate(self._cancel)
            return self.last_report

    def evaluate_incremental(self) -> EvaluationReport:
        """Recompute whatever the writes since the last pass affected."""
        with self._lock:
            self._check_open()
            self.last_report = self._evaluator.evaluate_incremental(self._cancel)
            return self.last_report

    def close(self) -> None:
        """Cancel any running pass and refuse further calls.

        Values computed before the cancellation stay valid.
        """
        self._cancel.set()
        with self._lock:
            self._closed = True
        logger.debug("Session closed")

    def _evaluate_pending(self) -> None:
        if self._outline.has_changes or self._evaluator.pending:
            self.last_report = self._evaluator.evaluate_incremental(self._cancel)

    def _check_open(self) -> None:
        if self._closed:
            msg = "Outline session is closed"
            raise SessionClosedError(msg)

    # ------------------------------------------------------------------
    # Tree mutation API
    # ------------------------------------------------------------------

    def create_node(self, parent_id: str | None = None, position: int | None = None, *, text: str = "") -> str:
        """Create a node and return its id."""
        with self.batch():
            return self._outline.create_node(parent_id, position, text=text).id

    def delete_node(self, node_id: str) -> list[str]:
        """Delete a node with its subtree and return the removed ids."""
        with self.batch():
            return self._outline.delete_node(node_id)

    def move_node(self, node_id: str, new_parent_id: str | None, position: int | None = None) -> None:
        with self.batch():
            self._outline.move_node(node_id, new_parent_id, position)

    def set_text(self, node_id: str, text: str) -> None:
        with self.batch():
            self._outline.set_text(node_id, text)

    def set_metadata(self, node_id: str, key: str, value: MetaValue) -> None:
        with self.batch():
            self._outline.set_metadata(node_id, key, value)

    def remove_metadata(self, node_id: str, key: str) -> None:
        with self.batch():
            self._outline.remove_metadata(node_id, key)

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> NodeInfo:
        """Snapshot of a node: text, metadata, computed value and state."""
        with self._lock:
            self._check_open()
            return NodeInfo.of(self._outline.get(node_id))

    def children(self, node_id: str | None = None) -> tuple[str, ...]:
        with self._lock:
            self._check_open()
            return self._outline.children(node_id)

    def roots(self) -> tuple[str, ...]:
        return self.children(None)

    def dependents(self, node_id: str) -> frozenset[str]:
        """Nodes whose scripts read `node_id`."""
        with self._lock:
            self._check_open()
            self._outline.get(node_id)
            return self._evaluator.graph.dependents(node_id)

    def reads(self, node_id: str) -> frozenset[str]:
        """Nodes that the script of `node_id` reads."""
        with self._lock:
            self._check_open()
            self._outline.get(node_id)
            return self._evaluator.graph.reads(node_id)

    def rendered_text(self, node_id: str) -> str:
        with self._lock:
            self._check_open()
            return rendered_text(self._outline.get(node_id))

    # ------------------------------------------------------------------
    # Template API
    # ------------------------------------------------------------------

    def register_template(self, template: TemplateDefinition) -> None:
        with self._lock:
            self._check_open()
            self._templates.register(template)

    def expand(self, template_id: str, parent_id: str | None = None, position: int | None = None) -> str:
        """Expand a registered template and return the new subtree root id."""
        with self.batch():
            return expand(self._outline, self._templates.get(template_id), parent_id, position)

    def apply_template(self, template_id: str, node_id: str) -> list[str]:
        """Merge a registered template's fields into an existing node."""
        with self.batch():
            return apply_template(self._outline, self._templates.get(template_id), node_id)
