"""Templates: reusable definitions for pre-populated subtrees."""

from __future__ import annotations

import logging
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ._errors import TemplateError
from ._node import NodeRef

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ._node import MetaValue
    from ._outline import Outline

logger = logging.getLogger(__name__)


class FieldType(StrEnum):
    """Type tag of a template metadata field."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    REFERENCE = "reference"


def _matches(field_type: FieldType, value: object) -> bool:
    match field_type:
        case FieldType.STRING | FieldType.REFERENCE:
            return isinstance(value, str)
        case FieldType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        case FieldType.BOOLEAN:
            return isinstance(value, bool)


class FieldDefinition(BaseModel):
    """A metadata field seeded by a template.

    Attributes:
        key: Metadata key.
        type: Type tag the default must match.
        default: Value set on expansion. Reference defaults hold a node id.
        prompt: Leave the field unset and mark it required instead.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str = Field(min_length=1)
    type: FieldType = FieldType.STRING
    default: bool | int | float | str | None = None
    prompt: bool = False

    @model_validator(mode="after")
    def _check_default(self) -> Self:
        if self.default is None:
            if not self.prompt:
                msg = f"Field '{self.key}' needs a default or prompt = true"
                raise ValueError(msg)
            return self
        if not _matches(self.type, self.default):
            msg = f"Default of field '{self.key}' is not a {self.type}: {self.default!r}"
            raise ValueError(msg)
        return self

    def default_value(self) -> MetaValue | None:
        """Metadata value to set on expansion, or None for prompt fields."""
        if self.prompt or self.default is None:
            return None
        if self.type is FieldType.REFERENCE:
            return NodeRef(str(self.default))
        return self.default


class TemplateNode(BaseModel):
    """One entry of a template's subtree shape."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    text: str = ""
    fields: tuple[FieldDefinition, ...] = ()
    children: tuple[TemplateNode, ...] = ()

    @model_validator(mode="after")
    def _check_unique_keys(self) -> Self:
        seen: set[str] = set()
        for field in self.fields:
            if field.key in seen:
                msg = f"Duplicate field '{field.key}'"
                raise ValueError(msg)
            seen.add(field.key)
        return self


class TemplateDefinition(TemplateNode):
    """A registered template: an id plus the root entry of its shape."""

    id: str = Field(min_length=1)
    description: str = ""


class TemplateRegistry:
    """Templates known to an outline session, by id."""

    def __init__(self) -> None:
        self._templates: dict[str, TemplateDefinition] = {}

    def register(self, template: TemplateDefinition) -> None:
        """Register a template.

        Raises:
            TemplateError: If a template with the same id is already registered.

        """
        if template.id in self._templates:
            msg = f"Template '{template.id}' is already registered"
            raise TemplateError(msg)
        self._templates[template.id] = template
        logger.debug("Registered template '%s'", template.id)

    def get(self, template_id: str) -> TemplateDefinition:
        """Get a template by id.

        Raises:
            TemplateError: If no such template is registered.

        """
        try:
            return self._templates[template_id]
        except KeyError:
            msg = f"Unknown template '{template_id}'"
            raise TemplateError(msg) from None

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __iter__(self) -> Iterator[TemplateDefinition]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


def _seed_fields(outline: Outline, node_id: str, fields: tuple[FieldDefinition, ...]) -> list[str]:
    """Set field defaults that the node does not have yet.

    Returns:
        Keys that were set. Prompt fields are marked required instead.

    """
    node = outline.get(node_id)
    seeded: list[str] = []
    for field in fields:
        if field.key in node.metadata:
            continue
        value = field.default_value()
        if value is None:
            outline.mark_required(node_id, field.key)
            continue
        outline.set_metadata(node_id, field.key, value)
        seeded.append(field.key)
    return seeded


def expand(
    outline: Outline,
    template: TemplateDefinition,
    parent_id: str | None,
    position: int | None = None,
) -> str:
    """Materialize a template as a new subtree.

    Every call creates fresh nodes; expanding twice yields two independent
    subtrees.

    Args:
        outline: Target outline.
        template: The template to expand.
        parent_id: Parent of the new subtree root, or None for a new root.
        position: Index among the parent's children. Appends when None.

    Returns:
        Id of the new subtree root.

    Raises:
        NotFoundError: If the parent does not exist.

    """
    root = outline.create_node(parent_id, position, text=template.text)
    _seed_fields(outline, root.id, template.fields)

    stack: list[tuple[str, TemplateNode]] = [(root.id, template)]
    while stack:
        node_id, entry = stack.pop()
        for child in entry.children:
            created = outline.create_node(node_id, text=child.text)
            _seed_fields(outline, created.id, child.fields)
            stack.append((created.id, child))

    logger.debug("Expanded template '%s' at %s", template.id, root.id)
    return root.id


def apply_template(outline: Outline, template: TemplateDefinition, node_id: str) -> list[str]:
    """Merge a template's root fields into an existing node.

    Fields the node already has keep their values, so applying the same
    template again changes nothing.

    Returns:
        Keys that were newly set.

    Raises:
        NotFoundError: If the node does not exist.

    """
    seeded = _seed_fields(outline, node_id, template.fields)
    logger.debug("Applied template '%s' to %s: %s", template.id, node_id, seeded)
    return seeded


def load_templates(path: Path | str) -> TemplateRegistry:
    """Load template definitions from a TOML file.

    The file holds an array of tables named ``template``::

        [[template]]
        id = "task"
        text = "Task"
        fields = [{ key = "done", type = "boolean", default = false }]

    Raises:
        TemplateError: If the file is not valid TOML or a definition is invalid.

    """
    path = Path(path)
    with path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid TOML in {path}: {e}"
            raise TemplateError(msg) from e

    registry = TemplateRegistry()
    for index, raw in enumerate(data.get("template", [])):
        try:
            template = TemplateDefinition.model_validate(raw)
        except ValidationError as e:
            msg = f"Invalid template #{index} in {path}: {e}"
            raise TemplateError(msg) from e
        registry.register(template)

    logger.debug("Loaded %d template(s) from %s", len(registry), path)
    return registry
