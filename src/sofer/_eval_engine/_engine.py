"""Incremental evaluation of outline scripts."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sofer._config import EngineConfig
from sofer._errors import (
    ErrorKind,
    EvaluationCancelledError,
    MutationLoopLimit,
    NodeError,
    NotFoundError,
    ScriptError,
    ScriptParseError,
)
from sofer._graph import DependencyGraph
from sofer._node import NodeState, check_meta_value
from sofer._outline import ChangeKind
from sofer._script import ExpressionSandbox, RemoveMetadata, SetMetadata, SetText

from ._resolution import ResolvedReads, build_inputs, resolve_reads

if TYPE_CHECKING:
    import threading
    from collections.abc import Mapping

    from sofer._node import Node
    from sofer._outline import Outline
    from sofer._script import MutationRequest, ParsedScript, ScriptEvaluator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EvaluationReport:
    """Result of one evaluation pass.

    Attributes:
        evaluated: Ids of the nodes that were (re)computed, in order.
        errors: Nodes that ended the pass in SCRIPT_ERROR or CYCLE_ERROR.
        cycles: One path per distinct dependency cycle met during the pass.
        mutation_errors: (source node id, error) for mutation requests that
            could not be applied.
        mutation_limit: Set when script mutations kept re-dirtying the
            outline beyond the configured number of rounds.
        rounds: Number of extra rounds triggered by script mutations.
        cancelled: Whether the pass was cancelled before quiescence.

    """

    evaluated: tuple[str, ...] = ()
    errors: Mapping[str, NodeError] = field(default_factory=dict)
    cycles: tuple[tuple[str, ...], ...] = ()
    mutation_errors: tuple[tuple[str, NodeError], ...] = ()
    mutation_limit: MutationLoopLimit | None = None
    rounds: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """Check if the pass completed without any error condition."""
        return (
            not self.errors
            and not self.mutation_errors
            and self.mutation_limit is None
            and not self.cancelled
        )


@dataclass(slots=True)
class _PassState:
    """Mutable bookkeeping of a pass, frozen into an `EvaluationReport`."""

    evaluated: list[str] = field(default_factory=list)
    errors: dict[str, NodeError] = field(default_factory=dict)
    cycles: dict[frozenset[str], tuple[str, ...]] = field(default_factory=dict)
    mutation_errors: list[tuple[str, NodeError]] = field(default_factory=list)
    mutation_limit: MutationLoopLimit | None = None
    rounds: int = 0
    cancelled: bool = False

    def report(self) -> EvaluationReport:
        return EvaluationReport(
            evaluated=tuple(self.evaluated),
            errors=dict(self.errors),
            cycles=tuple(self.cycles.values()),
            mutation_errors=tuple(self.mutation_errors),
            mutation_limit=self.mutation_limit,
            rounds=self.rounds,
            cancelled=self.cancelled,
        )


@dataclass(frozen=True, slots=True)
class _Prepared:
    """A node's parsed script and resolved reads, ready to execute."""

    script: ParsedScript | None
    reads: ResolvedReads = field(default_factory=ResolvedReads)
    error: NodeError | None = None


class Evaluator:
    """Keeps computed node values consistent with the outline.

    The evaluator owns all derived state: parsed scripts, the dependency
    graph and the set of nodes waiting to be recomputed. All of it can be
    dropped and rebuilt from the outline with `evaluate()`.

    Example:
        >>> outline = Outline()
        >>> root = outline.create_node(text="total @ sum(c.meta['n'] for c in children)")
        >>> child = outline.create_node(root.id)
        >>> outline.set_metadata(child.id, "n", 3)
        >>> Evaluator(outline).evaluate().success
        True
        >>> outline.get(root.id).value
        3

    """

    def __init__(
        self,
        outline: Outline,
        scripts: ScriptEvaluator | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._outline = outline
        self._scripts: ScriptEvaluator = scripts if scripts is not None else ExpressionSandbox()
        self._config = config if config is not None else EngineConfig()
        self._graph: DependencyGraph[str] = DependencyGraph()
        # Existence edges: script -> ids whose creation or deletion it must notice
        self._watches: DependencyGraph[str] = DependencyGraph()
        self._parse_cache: dict[str, tuple[str, ParsedScript | ScriptParseError | None]] = {}
        self._prepared: dict[str, _Prepared] = {}
        self._pending: set[str] = set()
        self._version = 0

    @property
    def outline(self) -> Outline:
        return self._outline

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def graph(self) -> DependencyGraph[str]:
        """The current script dependency graph (derived state)."""
        return self._graph

    @property
    def pending(self) -> frozenset[str]:
        """Nodes waiting to be recomputed."""
        return frozenset(self._pending)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def evaluate(self, cancel: threading.Event | None = None) -> EvaluationReport:
        """Run a full pass: drop every cache and recompute the whole outline."""
        self._outline.drain_changes()
        self._graph = DependencyGraph()
        self._watches = DependencyGraph()
        self._parse_cache.clear()
        self._prepared.clear()
        self._pending = set()
        for node in self._outline.walk():
            node.state = NodeState.DIRTY
            self._pending.add(node.id)
        logger.debug("Full evaluation of %d node(s)", len(self._pending))
        return self._run(cancel)

    def evaluate_incremental(self, cancel: threading.Event | None = None) -> EvaluationReport:
        """Recompute the nodes affected by writes since the last pass."""
        self.invalidate()
        return self._run(cancel)

    def invalidate(self) -> frozenset[str]:
        """Absorb pending outline writes into the dirty set.

        Every written node and all of its transitive dependents become dirty.
        Creating or deleting a node also dirties the scripts that looked it
        up by id or hold a visible reference to it. Deleted nodes are dropped from the dependency graph after their
        dependents have been dirtied.

        Returns:
            The nodes dirtied by this call.

        """
        changes = self._outline.drain_changes()
        dirty: set[str] = set()
        deleted: list[str] = []
        for node_id, kinds in changes.items():
            dirty |= self._graph.transitive_dependents(node_id)
            if kinds & {ChangeKind.CREATED, ChangeKind.DELETED}:
                for watcher in self._watches.dependents(node_id):
                    dirty.add(watcher)
                    dirty |= self._graph.transitive_dependents(watcher)
            if ChangeKind.DELETED in kinds:
                deleted.append(node_id)
            else:
                dirty.add(node_id)

        for node_id in deleted:
            self._graph.forget(node_id)
            self._watches.forget(node_id)
            self._parse_cache.pop(node_id, None)
            self._prepared.pop(node_id, None)

        dirty = {node_id for node_id in dirty if node_id in self._outline}
        for node_id in dirty:
            self._outline.get(node_id).state = NodeState.DIRTY
        self._pending = {node_id for node_id in self._pending | dirty if node_id in self._outline}
        if dirty:
            logger.debug("Dirtied %d node(s) from %d change(s)", len(dirty), len(changes))
        return frozenset(dirty)

    def refresh_dependencies(self) -> dict[str, NodeError]:
        """Parse and resolve every script without executing anything.

        Returns:
            Parse and resolution errors by node id.

        """
        self.invalidate()
        problems: dict[str, NodeError] = {}
        for node in self._outline.walk():
            prepared = self._prepare(node)
            if prepared.error is not None:
                problems[node.id] = prepared.error
        return problems

    def is_script(self, node_id: str) -> bool:
        """Whether the node's text holds a script (valid or not) as of its last preparation."""
        prepared = self._prepared.get(node_id)
        return prepared is not None and (prepared.script is not None or prepared.error is not None)

    def errors(self) -> dict[str, NodeError]:
        """Current error of every node in an error state, in outline order."""
        return {node.id: node.error for node in self._outline.walk() if node.error is not None}

    # ------------------------------------------------------------------
    # Pass orchestration
    # ------------------------------------------------------------------

    def _run(self, cancel: threading.Event | None) -> EvaluationReport:
        self._version += 1
        state = _PassState()
        limit = self._config.mutation_round_limit

        while True:
            mutations = self._run_round(state, cancel)
            if state.cancelled:
                break
            mutations = self._effective_mutations(mutations, state)
            if not mutations:
                break
            if state.rounds >= limit:
                dropped = tuple(dict.fromkeys(source for source, _ in mutations))
                state.mutation_limit = MutationLoopLimit(rounds=state.rounds, dropped=dropped)
                logger.warning(
                    "Mutation round limit (%d) reached, dropping requests from %s",
                    limit,
                    ", ".join(dropped),
                )
                break
            self._apply_mutations(mutations)
            state.rounds += 1
            self.invalidate()

        report = state.report()
        logger.info(
            "Evaluated %d node(s), %d error(s)%s",
            len(report.evaluated),
            len(report.errors),
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def _run_round(
        self,
        state: _PassState,
        cancel: threading.Event | None,
    ) -> list[tuple[str, MutationRequest]]:
        """Evaluate every pending node once, in dependency order.

        Ready nodes (all reads settled) run in outline pre-order. Whatever
        remains when nothing is ready is blocked by a cycle.
        """
        order = {node.id: index for index, node in enumerate(self._outline.walk())}
        for node_id in sorted(self._pending, key=order.__getitem__):
            self._prepare(self._outline.get(node_id))

        for node_id in sorted(self._pending, key=order.__getitem__):
            if node_id in self._graph.reads(node_id):
                self._fail_cycle(node_id, [node_id, node_id], state)

        waiting = {node_id: set(self._graph.reads(node_id) & self._pending) for node_id in self._pending}
        ready = [(order[node_id], node_id) for node_id, blockers in waiting.items() if not blockers]
        heapq.heapify(ready)
        mutations: list[tuple[str, MutationRequest]] = []

        while ready:
            if cancel is not None and cancel.is_set():
                self._cancel_round(mutations, state)
                return []
            _, node_id = heapq.heappop(ready)
            try:
                requests = self._evaluate_node(node_id, state, cancel)
            except EvaluationCancelledError:
                logger.info("Evaluation cancelled while running %s", node_id)
                self._cancel_round(mutations, state)
                return []
            mutations.extend((node_id, request) for request in requests)
            self._pending.discard(node_id)
            del waiting[node_id]

            for dependent in self._graph.dependents(node_id):
                blockers = waiting.get(dependent)
                if blockers is not None and node_id in blockers:
                    blockers.discard(node_id)
                    if not blockers:
                        heapq.heappush(ready, (order[dependent], dependent))

        for node_id in sorted(self._pending, key=order.__getitem__):
            self._fail_cycle(node_id, self._graph.cycle_check(node_id), state)

        return mutations

    def _cancel_round(self, mutations: list[tuple[str, MutationRequest]], state: _PassState) -> None:
        """Stop a round, keeping nodes whose mutation requests were not applied pending."""
        state.cancelled = True
        for source_id in dict.fromkeys(source for source, _ in mutations):
            if source_id in self._outline:
                self._outline.get(source_id).state = NodeState.DIRTY
                self._pending.add(source_id)

    def _evaluate_node(
        self,
        node_id: str,
        state: _PassState,
        cancel: threading.Event | None,
    ) -> tuple[MutationRequest, ...]:
        node = self._outline.get(node_id)
        if node.state is NodeState.EVALUATING:
            self._fail(node, NodeError(ErrorKind.CYCLE, "node was re-entered while evaluating"), state)
            return ()

        prepared = self._prepared[node_id]
        state.evaluated.append(node_id)
        if prepared.error is not None:
            self._fail(node, prepared.error, state)
            return ()
        if prepared.script is None:
            self._succeed(node, node.text, state)
            return ()

        for read_id in sorted(prepared.reads.node_ids):
            if self._outline.get(read_id).state is NodeState.CYCLE_ERROR:
                self._fail(node, NodeError(ErrorKind.CYCLE, f"depends on cycle through {read_id}"), state)
                return ()

        logger.debug("Evaluating %s", node_id)
        node.state = NodeState.EVALUATING
        inputs = build_inputs(self._outline, node_id, prepared.reads)
        try:
            outcome = self._scripts.execute(prepared.script, inputs, limits=self._config.limits(), cancel=cancel)
        except EvaluationCancelledError:
            node.state = NodeState.DIRTY
            raise
        except ScriptError as e:
            self._fail(node, NodeError.from_exception(e), state)
            return ()
        except Exception as e:
            logger.exception("Script evaluator failed on %s", node_id)
            self._fail(node, NodeError(ErrorKind.RUNTIME, f"{type(e).__name__}: {e}"), state)
            return ()

        logger.debug("Result for %s: %r", node_id, outcome.value)
        self._succeed(node, outcome.value, state)
        return outcome.mutations

    def _succeed(self, node: Node, value: object, state: _PassState) -> None:
        node.value = value
        node.state = NodeState.CLEAN
        node.error = None
        node.version = self._version
        state.errors.pop(node.id, None)

    def _fail(self, node: Node, error: NodeError, state: _PassState) -> None:
        """Record an error on a node; the last good value is kept."""
        node.state = NodeState.CYCLE_ERROR if error.kind is ErrorKind.CYCLE else NodeState.SCRIPT_ERROR
        node.error = error
        state.errors[node.id] = error
        logger.debug("Node %s failed: %s", node.id, error)

    def _fail_cycle(self, node_id: str, cycle: list[str] | None, state: _PassState) -> None:
        if cycle is None:
            message = "blocked by unresolved dependencies"
        elif node_id in cycle:
            message = "dependency cycle: " + " -> ".join(cycle)
        else:
            message = f"depends on cycle through {cycle[0]}"
        if cycle is not None:
            state.cycles.setdefault(frozenset(cycle), tuple(cycle))
        self._fail(self._outline.get(node_id), NodeError(ErrorKind.CYCLE, message), state)
        self._pending.discard(node_id)

    # ------------------------------------------------------------------
    # Scripts and reads
    # ------------------------------------------------------------------

    def _parse(self, node: Node) -> ParsedScript | ScriptParseError | None:
        cached = self._parse_cache.get(node.id)
        if cached is not None and cached[0] == node.text:
            return cached[1]
        result: ParsedScript | ScriptParseError | None
        try:
            result = self._scripts.parse(node.text)
        except ScriptParseError as e:
            result = e
        self._parse_cache[node.id] = (node.text, result)
        return result

    def _prepare(self, node: Node) -> _Prepared:
        """Parse a node's script, resolve its reads and record its edges."""
        parsed = self._parse(node)
        if parsed is None:
            prepared = _Prepared(script=None)
        elif isinstance(parsed, ScriptParseError):
            prepared = _Prepared(script=None, error=NodeError.from_exception(parsed))
        else:
            reads = resolve_reads(self._outline, node.id, parsed.reads)
            error = NodeError.from_exception(reads.missing[0]) if reads.missing else None
            prepared = _Prepared(script=parsed, reads=reads, error=error)
        self._graph.record_reads(node.id, prepared.reads.node_ids)
        self._watches.record_reads(node.id, prepared.reads.watched)
        self._prepared[node.id] = prepared
        return prepared

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _effective_mutations(
        self,
        mutations: list[tuple[str, MutationRequest]],
        state: _PassState,
    ) -> list[tuple[str, MutationRequest]]:
        """Drop requests that would not change anything.

        Requests aimed at missing nodes or carrying invalid metadata are
        reported in the pass state and dropped as well.
        """
        effective: list[tuple[str, MutationRequest]] = []
        for source_id, request in mutations:
            try:
                changes = self._changes_outline(request)
            except (NotFoundError, TypeError) as e:
                logger.warning("Dropping mutation from %s: %s", source_id, e)
                state.mutation_errors.append((source_id, NodeError.from_exception(e)))
                continue
            if changes:
                effective.append((source_id, request))
        return effective

    def _changes_outline(self, request: MutationRequest) -> bool:
        match request:
            case SetText(target=target, text=text):
                return self._outline.get(target).text != text
            case SetMetadata(target=target, key=key, value=value):
                check_meta_value(key, value)
                current = self._outline.get(target).metadata
                return not (key in current and type(current[key]) is type(value) and current[key] == value)
            case RemoveMetadata(target=target, key=key):
                return key in self._outline.get(target).metadata
        return False

    def _apply_mutations(self, mutations: list[tuple[str, MutationRequest]]) -> None:
        """Apply requests as ordinary outline writes, in the order they were produced."""
        for _, request in mutations:
            match request:
                case SetText(target=target, text=text):
                    self._outline.set_text(target, text)
                case SetMetadata(target=target, key=key, value=value):
                    self._outline.set_metadata(target, key, value)
                case RemoveMetadata(target=target, key=key):
                    self._outline.remove_metadata(target, key)
        logger.debug("Applied %d mutation request(s)", len(mutations))
