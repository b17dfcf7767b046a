"""Tests for templates."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from sofer import (
    FieldDefinition,
    FieldType,
    NodeRef,
    NotFoundError,
    Outline,
    TemplateDefinition,
    TemplateError,
    TemplateNode,
    TemplateRegistry,
    apply_template,
    expand,
    load_templates,
)


@pytest.fixture
def meeting() -> TemplateDefinition:
    return TemplateDefinition(
        id="meeting",
        text="Meeting",
        fields=(
            FieldDefinition(key="attendees", type=FieldType.NUMBER, default=0),
            FieldDefinition(key="date", prompt=True),
        ),
        children=(
            TemplateNode(text="Agenda", children=(TemplateNode(text="Item"),)),
            TemplateNode(text="Actions", fields=(FieldDefinition(key="open", type=FieldType.BOOLEAN, default=True),)),
        ),
    )


class TestFieldDefinition:
    """Tests for field validation."""

    def test_default_must_match_type(self) -> None:
        with pytest.raises(ValidationError, match="is not a number"):
            FieldDefinition(key="n", type=FieldType.NUMBER, default="three")

    def test_bool_is_not_a_number(self) -> None:
        with pytest.raises(ValidationError):
            FieldDefinition(key="n", type=FieldType.NUMBER, default=True)

    def test_default_or_prompt_required(self) -> None:
        with pytest.raises(ValidationError, match="needs a default"):
            FieldDefinition(key="n")

    def test_reference_default(self) -> None:
        field = FieldDefinition(key="owner", type=FieldType.REFERENCE, default="abc")
        assert field.default_value() == NodeRef("abc")

    def test_prompt_has_no_value(self) -> None:
        assert FieldDefinition(key="due", prompt=True).default_value() is None

    def test_duplicate_keys(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate field"):
            TemplateNode(fields=(FieldDefinition(key="a", default="x"), FieldDefinition(key="a", default="y")))


class TestRegistry:
    """Tests for TemplateRegistry."""

    def test_register_and_get(self, meeting: TemplateDefinition) -> None:
        registry = TemplateRegistry()
        registry.register(meeting)
        assert registry.get("meeting") is meeting
        assert "meeting" in registry
        assert len(registry) == 1
        assert list(registry) == [meeting]

    def test_duplicate_id(self, meeting: TemplateDefinition) -> None:
        registry = TemplateRegistry()
        registry.register(meeting)
        with pytest.raises(TemplateError, match="already registered"):
            registry.register(meeting)

    def test_unknown_id(self) -> None:
        with pytest.raises(TemplateError, match="Unknown template"):
            TemplateRegistry().get("nope")


class TestExpand:
    """Tests for materializing templates."""

    def test_builds_subtree(self, meeting: TemplateDefinition) -> None:
        outline = Outline()
        root_id = expand(outline, meeting, None)
        assert [node.text for node in outline.walk(root_id)] == ["Meeting", "Agenda", "Item", "Actions"]
        root = outline.get(root_id)
        assert root.metadata == {"attendees": 0}
        assert root.required == {"date"}
        actions = outline.get(root.children[1])
        assert actions.metadata == {"open": True}

    def test_expansions_are_independent(self, meeting: TemplateDefinition) -> None:
        outline = Outline()
        first = expand(outline, meeting, None)
        second = expand(outline, meeting, None)
        assert set(outline.subtree(first)).isdisjoint(outline.subtree(second))
        outline.set_metadata(first, "attendees", 5)
        assert outline.get(second).metadata["attendees"] == 0

    def test_position_under_parent(self, meeting: TemplateDefinition) -> None:
        outline = Outline()
        parent = outline.create_node()
        existing = outline.create_node(parent.id)
        root_id = expand(outline, meeting, parent.id, 0)
        assert outline.children(parent.id) == (root_id, existing.id)

    def test_missing_parent(self, meeting: TemplateDefinition) -> None:
        with pytest.raises(NotFoundError):
            expand(Outline(), meeting, "missing")


class TestApplyTemplate:
    """Tests for merging template fields into existing nodes."""

    def test_existing_values_are_kept(self, meeting: TemplateDefinition) -> None:
        outline = Outline()
        node = outline.create_node(text="Standup")
        outline.set_metadata(node.id, "attendees", 4)
        assert apply_template(outline, meeting, node.id) == []
        assert outline.get(node.id).metadata == {"attendees": 4}
        assert outline.get(node.id).required == {"date"}
        assert outline.get(node.id).text == "Standup"
        assert outline.children(node.id) == ()

    def test_idempotent(self, meeting: TemplateDefinition) -> None:
        outline = Outline()
        node = outline.create_node()
        assert apply_template(outline, meeting, node.id) == ["attendees"]
        assert apply_template(outline, meeting, node.id) == []


class TestLoadTemplates:
    """Tests for reading templates from TOML."""

    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "templates.toml"
        path.write_text(
            """
[[template]]
id = "task"
text = "Task"
fields = [
    { key = "done", type = "boolean", default = false },
    { key = "estimate", type = "number", default = 1.5 },
]

[[template.children]]
text = "Notes"
""",
        )
        registry = load_templates(path)
        task = registry.get("task")
        assert [field.key for field in task.fields] == ["done", "estimate"]
        assert task.fields[0].default is False
        assert task.children[0].text == "Notes"

    def test_invalid_definition(self, tmp_path: Path) -> None:
        path = tmp_path / "templates.toml"
        path.write_text('[[template]]\nid = "x"\nfields = [{ key = "n", type = "number", default = "a" }]\n')
        with pytest.raises(TemplateError, match="Invalid template #0"):
            load_templates(path)

    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "templates.toml"
        path.write_text("[[template]\n")
        with pytest.raises(TemplateError, match="Invalid TOML"):
            load_templates(path)
