"""Tests for OutlineSession."""

import threading

import pytest

from sofer import (
    NO_VALUE,
    CycleRejectedError,
    FieldDefinition,
    NodeState,
    NotFoundError,
    OutlineSession,
    SessionClosedError,
    TemplateDefinition,
    TemplateError,
    TemplateNode,
    rendered_text,
)


@pytest.fixture
def session() -> OutlineSession:
    return OutlineSession()


class TestWrites:
    """Tests for writes evaluated outside a batch."""

    def test_each_write_is_evaluated(self, session: OutlineSession) -> None:
        total = session.create_node(text='Total: @ sum(c.meta["count"] for c in children)')
        child = session.create_node(total)
        session.set_metadata(child, "count", 3)
        assert session.get(total).value == 3

        session.set_metadata(child, "count", 5)
        assert session.get(total).value == 5
        assert session.get(total).state is NodeState.CLEAN
        assert session.rendered_text(total) == "Total: 5"

    def test_structural_errors_raise(self, session: OutlineSession) -> None:
        root = session.create_node()
        child = session.create_node(root)
        with pytest.raises(CycleRejectedError):
            session.move_node(root, child)
        with pytest.raises(NotFoundError):
            session.set_text("missing", "x")

    def test_delete_returns_subtree(self, session: OutlineSession) -> None:
        root = session.create_node()
        child = session.create_node(root)
        assert session.delete_node(root) == [root, child]
        assert session.roots() == ()

    def test_dependency_queries(self, session: OutlineSession) -> None:
        total = session.create_node(text="@ sum(c.value for c in children)")
        child = session.create_node(total, text="@ 2")
        assert session.reads(total) == frozenset({child})
        assert session.dependents(child) == frozenset({total})
        assert session.children(total) == (child,)
        with pytest.raises(NotFoundError):
            session.dependents("missing")


class TestBatch:
    """Tests for grouping writes."""

    def test_batch_evaluates_once(self, session: OutlineSession) -> None:
        with session.batch():
            total = session.create_node(text='@ sum(c.meta["n"] for c in children)')
            for n in range(3):
                child = session.create_node(total)
                session.set_metadata(child, "n", n)
            assert session.get(total).value is NO_VALUE
        assert session.get(total).value == 3
        assert session.last_report is not None
        assert session.last_report.success

    def test_nested_batches(self, session: OutlineSession) -> None:
        with session.batch():
            node = session.create_node(text="@ 1")
            with session.batch():
                session.set_text(node, "@ 2")
            assert session.get(node).value is NO_VALUE
        assert session.get(node).value == 2

    def test_writes_before_error_are_evaluated(self, session: OutlineSession) -> None:
        with pytest.raises(NotFoundError), session.batch():
            node = session.create_node(text="@ 40 + 2")
            session.delete_node("missing")
        assert session.get(node).value == 42


class TestClose:
    """Tests for closing a session."""

    def test_calls_after_close_raise(self) -> None:
        session = OutlineSession()
        node = session.create_node(text="@ 1")
        session.close()
        assert session.closed
        with pytest.raises(SessionClosedError):
            session.get(node)
        with pytest.raises(SessionClosedError):
            session.create_node()

    def test_context_manager_closes(self) -> None:
        with OutlineSession() as session:
            session.create_node()
        assert session.closed

    def test_close_from_other_thread(self, session: OutlineSession) -> None:
        session.create_node(text="@ 1")
        thread = threading.Thread(target=session.close)
        thread.start()
        thread.join()
        assert session.closed


class TestTemplates:
    """Tests for template operations through the session."""

    @pytest.fixture
    def task(self) -> TemplateDefinition:
        return TemplateDefinition(
            id="task",
            text="Task",
            fields=(
                FieldDefinition(key="done", type="boolean", default=False),
                FieldDefinition(key="due", prompt=True),
            ),
            children=(TemplateNode(text="Notes"),),
        )

    def test_expand_and_apply(self, session: OutlineSession, task: TemplateDefinition) -> None:
        session.register_template(task)
        root = session.expand("task")
        info = session.get(root)
        assert info.text == "Task"
        assert info.metadata == {"done": False}
        assert info.required == frozenset({"due"})
        assert len(session.children(root)) == 1

        other = session.create_node()
        assert session.apply_template("task", other) == ["done"]
        assert session.apply_template("task", other) == []

    def test_unknown_template(self, session: OutlineSession) -> None:
        with pytest.raises(TemplateError, match="Unknown template"):
            session.expand("nope")


class TestRenderedText:
    """Tests for rendering node text with values."""

    def test_plain_node(self, session: OutlineSession) -> None:
        node = session.create_node(text="hello")
        assert rendered_text(session.get(node)) == "hello"

    def test_script_without_value(self) -> None:
        session = OutlineSession()
        with session.batch():
            node = session.create_node(text="Total @ 1")
            assert session.rendered_text(node) == "Total"
        assert session.rendered_text(node) == "Total 1"
