"""Tests for the restricted expression script evaluator."""

import threading
from types import MappingProxyType

import pytest

from sofer import (
    NO_VALUE,
    EvaluationCancelledError,
    ExecutionLimits,
    ExpressionSandbox,
    NodeRef,
    NodeView,
    ReadChild,
    ReadChildren,
    ReadNode,
    RemoveMetadata,
    ScriptEvaluator,
    ScriptInputs,
    ScriptOutcome,
    ScriptParseError,
    ScriptRuntimeError,
    ScriptTimeoutError,
    SetMetadata,
    SetText,
)
from sofer._script import split_script

LIMITS = ExecutionLimits()


def view(node_id: str, text: str = "", value: object = NO_VALUE, **meta: object) -> NodeView:
    return NodeView(id=node_id, text=text, value=value, meta=MappingProxyType(meta))


def run(source: str, *children: NodeView, own: NodeView | None = None, limits: ExecutionLimits = LIMITS) -> ScriptOutcome:
    sandbox = ExpressionSandbox()
    script = sandbox.parse(f"label @ {source}")
    assert script is not None
    inputs = ScriptInputs(
        own=own or view("own"),
        nodes=MappingProxyType({child.id: child for child in children}),
        children=tuple(child.id for child in children),
    )
    return sandbox.execute(script, inputs, limits=limits)


class TestSplitScript:
    """Tests for locating the script marker."""

    def test_label_and_source(self) -> None:
        assert split_script("Total @ 1 + 2") == ("Total ", "1 + 2")

    def test_marker_at_start(self) -> None:
        assert split_script("@ 42") == ("", "42")

    def test_no_marker(self) -> None:
        assert split_script("plain text") is None

    def test_email_is_not_a_marker(self) -> None:
        assert split_script("mail me at a@b.org") is None


class TestParse:
    """Tests for ExpressionSandbox.parse."""

    def test_satisfies_protocol(self) -> None:
        assert isinstance(ExpressionSandbox(), ScriptEvaluator)

    def test_plain_text_has_no_script(self) -> None:
        assert ExpressionSandbox().parse("just a note") is None

    def test_label_is_kept(self) -> None:
        script = ExpressionSandbox().parse("Sum: @ 1 + 1")
        assert script is not None
        assert script.label == "Sum: "
        assert script.source == "1 + 1"
        assert script.reads == frozenset()

    def test_children_read(self) -> None:
        script = ExpressionSandbox().parse("@ sum(c.value for c in children)")
        assert script is not None
        assert script.reads == frozenset({ReadChildren()})

    def test_child_and_node_reads(self) -> None:
        script = ExpressionSandbox().parse('@ child(0).value + node("abc").value + child(-1).value')
        assert script is not None
        assert script.reads == frozenset({ReadChild(0), ReadNode("abc"), ReadChild(-1)})

    def test_keyed_reads(self) -> None:
        script = ExpressionSandbox().parse('@ child(0).meta["count"] + node("abc").meta.get("n", 0)')
        assert script is not None
        assert script.reads == frozenset({ReadChild(0, key="count"), ReadNode("abc", key="n")})

    @pytest.mark.parametrize(
        "source",
        [
            "",
            "1 +",
            "__import__('os')",
            "(lambda: 1)()",
            "(x := 1)",
            "own.__class__",
            "open('f')",
            "child(n)",
            'node("a" + "b")',
            "sum(*children)",
            "[1] @ [2]",
        ],
    )
    def test_rejected_scripts(self, source: str) -> None:
        with pytest.raises(ScriptParseError):
            ExpressionSandbox().parse(f"x @ {source}")

    @pytest.mark.parametrize("source", ["-" * 1000 + "1", " + ".join(["1"] * 1000)])
    def test_deep_nesting_is_a_parse_error(self, source: str) -> None:
        with pytest.raises(ScriptParseError):
            ExpressionSandbox().parse(f"x @ {source}")


class TestExecute:
    """Tests for ExpressionSandbox.execute."""

    def test_arithmetic(self) -> None:
        assert run("2 ** 10 - 24").value == 1000

    def test_sum_of_children_metadata(self) -> None:
        outcome = run('sum(c.meta["count"] for c in children)', view("a", count=3), view("b", count=4))
        assert outcome.value == 7

    def test_child_value(self) -> None:
        assert run("child(-1).value * 2", view("a", value=1), view("b", value=5)).value == 10

    def test_own_metadata(self) -> None:
        assert run('own.meta["rate"] * 2', own=view("own", rate=1.5)).value == 3.0

    def test_fstring_and_conditional(self) -> None:
        outcome = run('f"{len(children)} items" if children else "empty"', view("a"), view("b"))
        assert outcome.value == "2 items"

    def test_list_result_is_frozen(self) -> None:
        assert run("[c.id for c in children]", view("a"), view("b")).value == ("a", "b")

    def test_mutation_requests_are_returned(self) -> None:
        outcome = run('[set_meta("done", True), set_text("x", child(0)), remove_meta("tmp")]', view("a"))
        assert outcome.mutations == (
            SetMetadata(target="own", key="done", value=True),
            SetText(target="a", text="x"),
            RemoveMetadata(target="own", key="tmp"),
        )

    def test_ref_builds_node_reference(self) -> None:
        outcome = run('set_meta("first", ref(child(0)))', view("a"))
        assert outcome.mutations == (SetMetadata(target="own", key="first", value=NodeRef("a")),)

    def test_invalid_metadata_value(self) -> None:
        with pytest.raises(ScriptRuntimeError):
            run('set_meta("items", [1, 2])')

    def test_runtime_error(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="ZeroDivisionError"):
            run("1 / 0")

    def test_missing_metadata_key(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="KeyError"):
            run('child(0).meta["missing"]', view("a"))

    def test_huge_exponent_is_rejected(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="too large"):
            run("10 ** 100000")

    def test_huge_power_of_large_base_is_rejected(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="too large"):
            run("(9 ** 9999) ** 2000")

    def test_moderate_power_is_allowed(self) -> None:
        assert run("(2 ** 64) ** 100").value == 2 ** 6400

    def test_huge_format_width_is_rejected(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="too large"):
            run('f"{1:>999999999}"')

    def test_format_spec_within_bounds(self) -> None:
        assert run('f"{3.14159:>8.2f}"').value == "    3.14"

    def test_huge_repetition_is_rejected(self) -> None:
        with pytest.raises(ScriptRuntimeError, match="too large"):
            run("'x' * 10000000")

    def test_step_limit(self) -> None:
        with pytest.raises(ScriptTimeoutError, match="step limit"):
            run("sum([x for x in [1] * 1000])", limits=ExecutionLimits(step_limit=100))

    def test_time_limit(self) -> None:
        limits = ExecutionLimits(step_limit=10**9, time_limit=0.01)
        with pytest.raises(ScriptTimeoutError, match="time limit"):
            run("sum([x * x for x in [1] * 1000000])", limits=limits)

    def test_cancellation(self) -> None:
        sandbox = ExpressionSandbox()
        script = sandbox.parse("@ sum([x for x in [1] * 10000])")
        assert script is not None
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(EvaluationCancelledError):
            sandbox.execute(script, ScriptInputs(own=view("own")), limits=LIMITS, cancel=cancel)
