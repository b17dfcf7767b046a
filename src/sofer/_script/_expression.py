"""Default script evaluator: restricted Python expressions.

A node's text holds a script when it contains a standalone ``@`` (at the
start of the text or after whitespace, followed by whitespace or the end of
the text). Everything before the marker is the node's label, everything after
it is a single Python expression, e.g.::

    Total weight @ sum(c.meta["weight"] for c in children)

The expression language is deliberately small:
  - Literals, arithmetic, comparisons, boolean logic, conditional expressions
  - f-strings, subscripts, slices, list/tuple/dict/set displays
  - List/set/dict comprehensions and generator expressions
  - A fixed set of names (see `SCRIPT_NAMES` and `BUILTINS`)
  - Attribute access limited to `NodeView` fields and a few safe methods

Everything else (imports, lambdas, assignment expressions, private
attributes, star-arguments) is rejected when parsing.

Reads are declared by the syntax itself: ``children`` reads every child,
``child(0)`` reads the first child and ``node("<id>")`` reads a node by id.
The arguments of ``child`` and ``node`` must be literals so the read set is
known without running the script.
"""

from __future__ import annotations

import ast
import operator as op
import re
import time
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

from sofer._errors import EvaluationCancelledError, ScriptParseError, ScriptRuntimeError, ScriptTimeoutError
from sofer._node import NodeRef, check_meta_value

from ._protocol import (
    ExecutionLimits,
    NodeView,
    ParsedScript,
    ReadChild,
    ReadChildren,
    ReadNode,
    RemoveMetadata,
    ScriptInputs,
    ScriptOutcome,
    SetMetadata,
    SetText,
)

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from ._protocol import MutationRequest, ReadDeclaration

SCRIPT_MARKER: Final = re.compile(r"(?:^|(?<=\s))@(?=\s|$)")

BUILTINS: Final[dict[str, Callable[..., Any]]] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "max": max,
    "min": min,
    "round": round,
    "sorted": sorted,
    "str": str,
    "sum": sum,
}

# Names that are bound per execution
SCRIPT_NAMES: Final = frozenset(
    {"children", "child", "node", "own", "ref", "set_meta", "remove_meta", "set_text"},
)

NODE_VIEW_ATTRS: Final = frozenset({"id", "text", "value", "meta"})

SAFE_METHODS: Final = frozenset(
    {
        "get",
        "keys",
        "values",
        "items",
        "lower",
        "upper",
        "strip",
        "title",
        "startswith",
        "endswith",
        "split",
        "join",
        "replace",
        "count",
        "index",
        "is_integer",
    },
)

_ALLOWED_NODES: Final = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.keyword,
    ast.Name,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Set,
    ast.Dict,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.comprehension,
    ast.JoinedStr,
    ast.FormattedValue,
    ast.Load,
    ast.Store,
    ast.boolop,
    ast.cmpop,
    ast.unaryop,
)

_BIN_OPS: Final[dict[type[ast.operator], Callable[[Any, Any], Any]]] = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.FloorDiv: op.floordiv,
    ast.Mod: op.mod,
    ast.Pow: op.pow,
}

_UNARY_OPS: Final[dict[type[ast.unaryop], Callable[[Any], Any]]] = {
    ast.Not: op.not_,
    ast.USub: op.neg,
    ast.UAdd: op.pos,
}

_CMP_OPS: Final[dict[type[ast.cmpop], Callable[[Any, Any], bool]]] = {
    ast.Eq: op.eq,
    ast.NotEq: op.ne,
    ast.Lt: op.lt,
    ast.LtE: op.le,
    ast.Gt: op.gt,
    ast.GtE: op.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: op.is_,
    ast.IsNot: op.is_not,
}

MAX_EXPONENT: Final = 10_000
MAX_RESULT_BITS: Final = 100_000
MAX_SEQUENCE_LENGTH: Final = 1_000_000
MAX_FORMAT_WIDTH: Final = 10_000

_FORMAT_NUMBERS: Final = re.compile(r"\d+")

# The wall clock and the cancel flag are polled every this many steps
_POLL_INTERVAL: Final = 64

_RUNTIME_ERRORS: Final = (
    ArithmeticError,
    AttributeError,
    KeyError,
    IndexError,
    TypeError,
    ValueError,
    RecursionError,
    MemoryError,
)


def split_script(text: str) -> tuple[str, str] | None:
    """Split node text at the script marker.

    Returns:
        (label, source) or None when the text has no script marker.

    Example:
        >>> split_script("Total @ 1 + 2")
        ('Total ', '1 + 2')
        >>> split_script("mail me at a@b.org") is None
        True

    """
    match = SCRIPT_MARKER.search(text)
    if match is None:
        return None
    return text[: match.start()], text[match.end() :].strip()


# =============================================================================
# Parsing and validation
# =============================================================================


def _literal_int(node: ast.expr) -> int | None:
    if isinstance(node, ast.Constant) and type(node.value) is int:
        return node.value
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        inner = _literal_int(node.operand)
        return None if inner is None else -inner
    return None


def _literal_str(node: ast.expr) -> str | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    return None


class _ScriptValidator(ast.NodeVisitor):
    """Reject disallowed syntax and collect the read declarations."""

    def __init__(self) -> None:
        self.reads: set[ReadDeclaration] = set()
        self._bound: list[set[str]] = []
        # Calls to child()/node() already recorded with a specific metadata key
        self._keyed_calls: set[int] = set()

    def generic_visit(self, node: ast.AST) -> Any:
        if not isinstance(node, _ALLOWED_NODES):
            msg = f"Disallowed syntax: {type(node).__name__}"
            raise ScriptParseError(msg)
        return super().generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        if type(node.op) not in _BIN_OPS:
            msg = f"Disallowed operator: {type(node.op).__name__}"
            raise ScriptParseError(msg)
        self.visit(node.left)
        self.visit(node.right)

    def visit_Name(self, node: ast.Name) -> Any:
        if isinstance(node.ctx, ast.Store):
            return
        if any(node.id in scope for scope in self._bound):
            return
        if node.id == "children":
            self.reads.add(ReadChildren())
            return
        if node.id not in BUILTINS and node.id not in SCRIPT_NAMES:
            msg = f"Unknown name: {node.id}"
            raise ScriptParseError(msg)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            msg = "Private attributes are not allowed"
            raise ScriptParseError(msg)
        if node.attr not in NODE_VIEW_ATTRS and node.attr not in SAFE_METHODS:
            msg = f"Unknown attribute: {node.attr}"
            raise ScriptParseError(msg)
        self.visit(node.value)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        # child(0).meta["key"] / node("id").meta["key"] reads a single field
        key = _literal_str(node.slice)
        if key is not None:
            self._claim_keyed_read(node.value, key)
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> Any:
        if any(isinstance(arg, ast.Starred) for arg in node.args) or any(kw.arg is None for kw in node.keywords):
            msg = "Star-arguments are not allowed"
            raise ScriptParseError(msg)

        func = node.func
        if isinstance(func, ast.Attribute) and func.attr == "get" and node.args:
            key = _literal_str(node.args[0])
            if key is not None:
                self._claim_keyed_read(func.value, key)

        if isinstance(func, ast.Name) and func.id in {"child", "node"} and not self._is_bound(func.id):
            declaration = self._read_declaration(node)
            if id(node) not in self._keyed_calls:
                self.reads.add(declaration)
            return
        self.generic_visit(node)

    def _visit_comprehension(self, node: ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp) -> Any:
        scope: set[str] = set()
        for generator in node.generators:
            if generator.is_async:
                msg = "Async comprehensions are not allowed"
                raise ScriptParseError(msg)
            scope.update(_target_names(generator.target))
        self._bound.append(scope)
        try:
            self.generic_visit(node)
        finally:
            self._bound.pop()

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension

    def visit_Dict(self, node: ast.Dict) -> Any:
        if any(key is None for key in node.keys):
            msg = "Dict unpacking is not allowed"
            raise ScriptParseError(msg)
        self.generic_visit(node)

    def _is_bound(self, name: str) -> bool:
        return any(name in scope for scope in self._bound)

    def _read_declaration(self, call: ast.Call, key: str | None = None) -> ReadDeclaration:
        name = call.func.id  # type: ignore[attr-defined]
        if len(call.args) != 1 or call.keywords:
            msg = f"{name}() takes exactly one literal argument"
            raise ScriptParseError(msg)
        if name == "child":
            position = _literal_int(call.args[0])
            if position is None:
                msg = "child() requires an integer literal position"
                raise ScriptParseError(msg)
            return ReadChild(position=position, key=key)
        node_id = _literal_str(call.args[0])
        if node_id is None:
            msg = "node() requires a string literal id"
            raise ScriptParseError(msg)
        return ReadNode(node_id=node_id, key=key)

    def _claim_keyed_read(self, target: ast.expr, key: str) -> None:
        # Matches <call>.meta where <call> is child(...) or node(...)
        if not (isinstance(target, ast.Attribute) and target.attr == "meta"):
            return
        call = target.value
        if (
            isinstance(call, ast.Call)
            and isinstance(call.func, ast.Name)
            and call.func.id in {"child", "node"}
            and not self._is_bound(call.func.id)
        ):
            self.reads.add(self._read_declaration(call, key))
            self._keyed_calls.add(id(call))


def _target_names(target: ast.expr) -> set[str]:
    match target:
        case ast.Name(id=name):
            return {name}
        case ast.Tuple(elts=elts) | ast.List(elts=elts):
            names: set[str] = set()
            for elt in elts:
                names |= _target_names(elt)
            return names
        case _:
            msg = f"Unsupported comprehension target: {type(target).__name__}"
            raise ScriptParseError(msg)


# =============================================================================
# Execution
# =============================================================================


class _Interpreter:
    """Tree-walking evaluator with a step budget."""

    def __init__(
        self,
        inputs: ScriptInputs,
        limits: ExecutionLimits,
        cancel: threading.Event | None,
    ) -> None:
        self._inputs = inputs
        self._limits = limits
        self._cancel = cancel
        self._steps = 0
        self._deadline = None if limits.time_limit is None else time.monotonic() + limits.time_limit
        self.mutations: list[MutationRequest] = []
        self._names: dict[str, Any] = {
            **BUILTINS,
            "own": inputs.own,
            "child": self._child,
            "node": self._node,
            "ref": self._ref,
            "set_meta": self._set_meta,
            "remove_meta": self._remove_meta,
            "set_text": self._set_text,
        }

    def run(self, tree: ast.Expression) -> Any:
        return self._eval(tree.body, {})

    # -- budget ---------------------------------------------------------

    def _tick(self) -> None:
        self._steps += 1
        if self._steps > self._limits.step_limit:
            msg = f"Script exceeded the step limit of {self._limits.step_limit}"
            raise ScriptTimeoutError(msg)
        if self._steps % _POLL_INTERVAL == 0:
            self._poll()

    def _poll(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            msg = "Evaluation cancelled"
            raise EvaluationCancelledError(msg)
        if self._deadline is not None and time.monotonic() > self._deadline:
            msg = f"Script exceeded the time limit of {self._limits.time_limit}s"
            raise ScriptTimeoutError(msg)

    # -- script functions -----------------------------------------------

    def _children(self) -> list[NodeView]:
        return [self._inputs.nodes[child_id] for child_id in self._inputs.children]

    def _child(self, position: int) -> NodeView:
        return self._inputs.nodes[self._inputs.children[position]]

    def _node(self, node_id: str) -> NodeView:
        return self._inputs.nodes[node_id]

    @staticmethod
    def _ref(target: NodeView | str) -> NodeRef:
        return NodeRef(target.id if isinstance(target, NodeView) else str(target))

    def _target(self, target: NodeView | str | None) -> str:
        if target is None:
            return self._inputs.own.id
        if isinstance(target, NodeView):
            return target.id
        if isinstance(target, str):
            return target
        msg = f"Mutation target must be a node or an id, got {type(target).__name__}"
        raise TypeError(msg)

    def _set_meta(self, key: str, value: Any, target: NodeView | str | None = None) -> Any:
        check_meta_value(key, value)
        self.mutations.append(SetMetadata(target=self._target(target), key=key, value=value))
        return value

    def _remove_meta(self, key: str, target: NodeView | str | None = None) -> None:
        self.mutations.append(RemoveMetadata(target=self._target(target), key=key))

    def _set_text(self, text: str, target: NodeView | str | None = None) -> str:
        if not isinstance(text, str):
            msg = f"set_text() expects a string, got {type(text).__name__}"
            raise TypeError(msg)
        self.mutations.append(SetText(target=self._target(target), text=text))
        return text

    # -- evaluation -----------------------------------------------------

    def _eval(self, node: ast.AST, scope: dict[str, Any]) -> Any:
        self._tick()
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            msg = f"Unsupported syntax: {type(node).__name__}"
            raise ScriptRuntimeError(msg)
        return handler(node, scope)

    def _eval_Constant(self, node: ast.Constant, scope: dict[str, Any]) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name, scope: dict[str, Any]) -> Any:
        if node.id in scope:
            return scope[node.id]
        if node.id == "children":
            return self._children()
        return self._names[node.id]

    def _eval_Attribute(self, node: ast.Attribute, scope: dict[str, Any]) -> Any:
        obj = self._eval(node.value, scope)
        if isinstance(obj, NodeView):
            if node.attr not in NODE_VIEW_ATTRS:
                msg = f"Node has no attribute '{node.attr}'"
                raise AttributeError(msg)
        elif node.attr not in SAFE_METHODS:
            msg = f"'{type(obj).__name__}' has no attribute '{node.attr}'"
            raise AttributeError(msg)
        return getattr(obj, node.attr)

    def _eval_Subscript(self, node: ast.Subscript, scope: dict[str, Any]) -> Any:
        obj = self._eval(node.value, scope)
        return obj[self._eval(node.slice, scope)]

    def _eval_Slice(self, node: ast.Slice, scope: dict[str, Any]) -> slice:
        def part(value: ast.expr | None) -> Any:
            return None if value is None else self._eval(value, scope)

        return slice(part(node.lower), part(node.upper), part(node.step))

    def _eval_BinOp(self, node: ast.BinOp, scope: dict[str, Any]) -> Any:
        left = self._eval(node.left, scope)
        right = self._eval(node.right, scope)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            msg = f"Exponent {right} is too large"
            raise ScriptRuntimeError(msg)
        if isinstance(node.op, ast.Pow) and isinstance(left, int) and isinstance(right, int) and right > 0:
            if left.bit_length() * right > MAX_RESULT_BITS:
                msg = f"Result of {left.bit_length()}-bit base to the power {right} is too large"
                raise ScriptRuntimeError(msg)
        if isinstance(node.op, ast.Mult):
            _check_repeat(left, right)
            _check_repeat(right, left)
        return _BIN_OPS[type(node.op)](left, right)

    def _eval_UnaryOp(self, node: ast.UnaryOp, scope: dict[str, Any]) -> Any:
        operand = self._eval(node.operand, scope)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except KeyError:
            msg = f"Unsupported operator: {type(node.op).__name__}"
            raise ScriptRuntimeError(msg) from None

    def _eval_BoolOp(self, node: ast.BoolOp, scope: dict[str, Any]) -> Any:
        result: Any = None
        for value_node in node.values:
            result = self._eval(value_node, scope)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _eval_Compare(self, node: ast.Compare, scope: dict[str, Any]) -> bool:
        left = self._eval(node.left, scope)
        for cmp_op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self._eval(comparator, scope)
            if not _CMP_OPS[type(cmp_op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp, scope: dict[str, Any]) -> Any:
        if self._eval(node.test, scope):
            return self._eval(node.body, scope)
        return self._eval(node.orelse, scope)

    def _eval_Call(self, node: ast.Call, scope: dict[str, Any]) -> Any:
        func = self._eval(node.func, scope)
        args = [self._eval(arg, scope) for arg in node.args]
        kwargs = {kw.arg: self._eval(kw.value, scope) for kw in node.keywords}
        return func(*args, **kwargs)

    def _eval_List(self, node: ast.List, scope: dict[str, Any]) -> list[Any]:
        return [self._eval(elt, scope) for elt in node.elts]

    def _eval_Tuple(self, node: ast.Tuple, scope: dict[str, Any]) -> tuple[Any, ...]:
        return tuple(self._eval(elt, scope) for elt in node.elts)

    def _eval_Set(self, node: ast.Set, scope: dict[str, Any]) -> set[Any]:
        return {self._eval(elt, scope) for elt in node.elts}

    def _eval_Dict(self, node: ast.Dict, scope: dict[str, Any]) -> dict[Any, Any]:
        return {
            self._eval(key, scope): self._eval(value, scope)
            for key, value in zip(node.keys, node.values, strict=True)
            if key is not None
        }

    def _eval_JoinedStr(self, node: ast.JoinedStr, scope: dict[str, Any]) -> str:
        return "".join(str(self._eval(value, scope)) for value in node.values)

    def _eval_FormattedValue(self, node: ast.FormattedValue, scope: dict[str, Any]) -> str:
        value = self._eval(node.value, scope)
        match node.conversion:
            case 115:  # !s
                value = str(value)
            case 114:  # !r
                value = repr(value)
            case 97:  # !a
                value = ascii(value)
        spec = "" if node.format_spec is None else self._eval(node.format_spec, scope)
        if any(int(number) > MAX_FORMAT_WIDTH for number in _FORMAT_NUMBERS.findall(spec)):
            msg = f"Format width or precision in {spec!r} is too large"
            raise ScriptRuntimeError(msg)
        return format(value, spec)

    def _comprehension_scopes(
        self,
        generators: list[ast.comprehension],
        scope: dict[str, Any],
    ) -> list[dict[str, Any]]:
        scopes = [scope]
        for generator in generators:
            next_scopes: list[dict[str, Any]] = []
            for current in scopes:
                for item in self._eval(generator.iter, current):
                    self._tick()
                    inner = dict(current)
                    _bind(generator.target, item, inner)
                    if all(self._eval(cond, inner) for cond in generator.ifs):
                        next_scopes.append(inner)
            scopes = next_scopes
        return scopes

    def _eval_ListComp(self, node: ast.ListComp, scope: dict[str, Any]) -> list[Any]:
        return [self._eval(node.elt, inner) for inner in self._comprehension_scopes(node.generators, scope)]

    # Generator expressions are materialised so every element is charged to the budget
    _eval_GeneratorExp = _eval_ListComp

    def _eval_SetComp(self, node: ast.SetComp, scope: dict[str, Any]) -> set[Any]:
        return {self._eval(node.elt, inner) for inner in self._comprehension_scopes(node.generators, scope)}

    def _eval_DictComp(self, node: ast.DictComp, scope: dict[str, Any]) -> dict[Any, Any]:
        return {
            self._eval(node.key, inner): self._eval(node.value, inner)
            for inner in self._comprehension_scopes(node.generators, scope)
        }


def _bind(target: ast.expr, value: Any, scope: dict[str, Any]) -> None:
    if isinstance(target, ast.Name):
        scope[target.id] = value
        return
    elts = target.elts  # type: ignore[attr-defined]
    values = list(value)
    if len(values) != len(elts):
        msg = f"Cannot unpack {len(values)} values into {len(elts)} names"
        raise ValueError(msg)
    for elt, item in zip(elts, values, strict=True):
        _bind(elt, item, scope)


def _check_repeat(sequence: Any, count: Any) -> None:
    if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
        if len(sequence) * count > MAX_SEQUENCE_LENGTH:
            msg = "Sequence repetition result is too large"
            raise ScriptRuntimeError(msg)


class ExpressionSandbox:
    """`ScriptEvaluator` for restricted Python expressions."""

    def parse(self, text: str) -> ParsedScript | None:
        parts = split_script(text)
        if parts is None:
            return None
        label, source = parts
        if not source:
            msg = "Empty script after '@'"
            raise ScriptParseError(msg)

        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            msg = f"Invalid syntax: {e.msg} (column {e.offset})"
            raise ScriptParseError(msg) from e
        except (RecursionError, MemoryError) as e:
            msg = "Script is nested too deeply"
            raise ScriptParseError(msg) from e

        validator = _ScriptValidator()
        try:
            validator.visit(tree)
        except (RecursionError, MemoryError) as e:
            msg = "Script is nested too deeply"
            raise ScriptParseError(msg) from e
        return ParsedScript(label=label, source=source, reads=frozenset(validator.reads), body=tree)

    def execute(
        self,
        script: ParsedScript,
        inputs: ScriptInputs,
        *,
        limits: ExecutionLimits,
        cancel: threading.Event | None = None,
    ) -> ScriptOutcome:
        interpreter = _Interpreter(inputs, limits, cancel)
        try:
            value = interpreter.run(script.body)
        except _RUNTIME_ERRORS as e:
            msg = f"{type(e).__name__}: {e}"
            raise ScriptRuntimeError(msg) from e
        return ScriptOutcome(value=_freeze(value), mutations=tuple(interpreter.mutations))


def _freeze(value: Any) -> Any:
    """Make container results immutable so cached values cannot be altered."""
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, set):
        return frozenset(value)
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    return value
