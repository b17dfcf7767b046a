"""Reading and writing outlines.

Two formats are supported:

- TOML documents (``.toml``): nested ``[[nodes]]`` tables validated with
  pydantic. Metadata references live in a separate ``refs`` table so their
  tag survives the round trip.
- The line format (``.sofer``): one node per line, parents before children::

      <id> <parent id or -> <attributes or -> <text>

  Attributes are ``key="text";key=1.5;key=T;key=F;key=#<node id>;``.
  Newlines and backslashes in the text are escaped.
"""

import logging
import math
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ._errors import FormatError
from ._node import NO_VALUE, NodeRef
from ._outline import Outline

if TYPE_CHECKING:
    from ._node import MetaValue, Node

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_KEY_PATTERN = re.compile(r"[^\s=;\"#]+")
_BARE_VALUE = re.compile(r"[^\s;\"]*")
_NO_FIELD = "-"


# =============================================================================
# TOML documents
# =============================================================================


class NodeDocument(BaseModel):
    """A node as stored in a TOML document."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    text: str = ""
    meta: dict[str, bool | int | float | str] = Field(default_factory=dict)
    refs: dict[str, str] = Field(default_factory=dict)
    value: Any = None
    state: str | None = None
    error: str | None = None
    children: list["NodeDocument"] = Field(default_factory=list)


class OutlineDocument(BaseModel):
    """Root of a TOML outline document."""

    model_config = ConfigDict(extra="forbid")

    version: int = FORMAT_VERSION
    nodes: list[NodeDocument] = Field(default_factory=list)


def _serialize_value(value: Any) -> Any:
    """Convert a computed value into something TOML can hold.

    Returns None for values that cannot be stored (no value, NaN).
    """
    if value is NO_VALUE or value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(k): v for k, v in ((k, _serialize_value(v)) for k, v in value.items()) if v is not None}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_serialize_value(item) for item in value]
        return [item for item in items if item is not None]
    return str(value)


def _node_document(outline: Outline, node: "Node", *, include_values: bool) -> NodeDocument:
    meta: dict[str, bool | int | float | str] = {}
    refs: dict[str, str] = {}
    for key, value in node.metadata.items():
        if isinstance(value, NodeRef):
            refs[key] = value.target
        else:
            meta[key] = value

    document = NodeDocument(id=node.id, text=node.text, meta=meta, refs=refs)
    if include_values:
        document.value = _serialize_value(node.value)
        document.state = str(node.state)
        document.error = None if node.error is None else str(node.error)
    document.children = [
        _node_document(outline, outline.get(child_id), include_values=include_values) for child_id in node.children
    ]
    return document


def outline_to_dict(outline: Outline, *, include_values: bool = False) -> dict[str, Any]:
    """Convert an outline to a TOML-ready dictionary.

    Args:
        outline: The outline to convert.
        include_values: Also store computed values, states and errors.

    """
    document = OutlineDocument(
        nodes=[_node_document(outline, outline.get(root_id), include_values=include_values) for root_id in outline.roots()],
    )
    return document.model_dump(mode="python", exclude_none=True, exclude_defaults=False)


def outline_from_dict(data: Mapping[str, Any]) -> Outline:
    """Build an outline from a parsed TOML dictionary.

    Computed values stored in the document are ignored; they are derived
    state and are recomputed by evaluation.

    Raises:
        FormatError: If the document is invalid or repeats an id.

    """
    try:
        document = OutlineDocument.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid outline document: {e}"
        raise FormatError(msg) from e
    if document.version != FORMAT_VERSION:
        msg = f"Unsupported outline document version {document.version}"
        raise FormatError(msg)

    outline = Outline()
    stack: list[tuple[str | None, NodeDocument]] = [(None, entry) for entry in reversed(document.nodes)]
    while stack:
        parent_id, entry = stack.pop()
        try:
            node = outline.create_node(parent_id, text=entry.text, node_id=entry.id)
        except ValueError as e:
            raise FormatError(str(e)) from e
        for key, value in entry.meta.items():
            outline.set_metadata(node.id, key, value)
        for key, target in entry.refs.items():
            outline.set_metadata(node.id, key, NodeRef(target))
        stack.extend((node.id, child) for child in reversed(entry.children))

    outline.drain_changes()
    return outline


def load_outline_toml(path: Path | str) -> Outline:
    """Load an outline from a TOML document.

    Raises:
        FormatError: If the file is not valid TOML or not a valid outline.

    """
    path = Path(path)
    with path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid TOML in {path}: {e}"
            raise FormatError(msg) from e
    outline = outline_from_dict(data)
    logger.debug("Loaded %d node(s) from %s", len(outline), path)
    return outline


def export_outline_toml(outline: Outline, path: Path | str, *, include_values: bool = False) -> None:
    """Write an outline to a TOML document."""
    path = Path(path)
    with path.open("wb") as f:
        tomli_w.dump(outline_to_dict(outline, include_values=include_values), f)
    logger.debug("Exported %d node(s) to %s", len(outline), path)


# =============================================================================
# Line format
# =============================================================================


def _escape_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _unescape_text(text: str, line_number: int) -> str:
    out: list[str] = []
    chars = iter(text)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars, None)
        match escaped:
            case "\\":
                out.append("\\")
            case "n":
                out.append("\n")
            case _:
                msg = f"Line {line_number}: invalid escape sequence in text"
                raise FormatError(msg)
    return "".join(out)


def _format_number(value: float) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        msg = f"Cannot store non-finite number {value!r}"
        raise ValueError(msg)
    return repr(value)


def _format_attribute(key: str, value: "MetaValue") -> str:
    if not _KEY_PATTERN.fullmatch(key):
        msg = f"Metadata key {key!r} cannot be stored in the line format"
        raise ValueError(msg)
    match value:
        case bool():
            encoded = "T" if value else "F"
        case NodeRef(target=target):
            encoded = f"#{target}"
        case int() | float():
            encoded = _format_number(value)
        case str():
            escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            encoded = f'"{escaped}"'
        case _:
            msg = f"Unsupported metadata value for '{key}': {type(value).__name__}"
            raise TypeError(msg)
    return f"{key}={encoded};"


def dump_sofer(outline: Outline) -> str:
    """Serialize an outline to the line format.

    Raises:
        ValueError: If a metadata key or value cannot be represented.

    """
    lines: list[str] = []
    for node in outline.walk():
        if " " in node.id:
            msg = f"Node id {node.id!r} cannot be stored in the line format"
            raise ValueError(msg)
        attributes = "".join(_format_attribute(key, value) for key, value in node.metadata.items())
        parent = node.parent_id if node.parent_id is not None else _NO_FIELD
        lines.append(f"{node.id} {parent} {attributes or _NO_FIELD} {_escape_text(node.text)}")
    return "".join(f"{line}\n" for line in lines)


class _AttributeReader:
    """Cursor over the attribute field of one line.

    The field ends at the first space outside a quoted string; whatever
    follows that space is the node text.
    """

    def __init__(self, source: str, line_number: int) -> None:
        self._source = source
        self._pos = 0
        self._line_number = line_number

    @property
    def position(self) -> int:
        return self._pos

    def _error(self, problem: str) -> FormatError:
        return FormatError(f"Line {self._line_number}: {problem} in attributes at column {self._pos + 1}")

    def read_all(self) -> list[tuple[str, "MetaValue"]]:
        attributes: list[tuple[str, MetaValue]] = []
        while self._pos < len(self._source) and self._source[self._pos] != " ":
            match = _KEY_PATTERN.match(self._source, self._pos)
            if match is None:
                raise self._error("expected a key")
            key = match.group()
            self._pos = match.end()
            if self._source[self._pos : self._pos + 1] != "=":
                raise self._error("expected '='")
            self._pos += 1
            attributes.append((key, self._read_value()))
            if self._source[self._pos : self._pos + 1] != ";":
                raise self._error("expected ';'")
            self._pos += 1
        return attributes

    def _read_value(self) -> "MetaValue":
        if self._source[self._pos : self._pos + 1] == '"':
            return self._read_string()
        match = _BARE_VALUE.match(self._source, self._pos)
        raw = match.group() if match is not None else ""
        if not raw:
            raise self._error("expected a value")
        self._pos += len(raw)
        if raw == "T":
            return True
        if raw == "F":
            return False
        if raw.startswith("#") and len(raw) > 1:
            return NodeRef(raw[1:])
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            return float(raw)
        except ValueError:
            raise self._error(f"invalid value {raw!r}") from None

    def _read_string(self) -> str:
        out: list[str] = []
        self._pos += 1
        while self._pos < len(self._source):
            char = self._source[self._pos]
            self._pos += 1
            if char == '"':
                return "".join(out)
            if char != "\\":
                out.append(char)
                continue
            escaped = self._source[self._pos : self._pos + 1]
            self._pos += 1
            match escaped:
                case "n":
                    out.append("\n")
                case '"' | "\\":
                    out.append(escaped)
                case _:
                    raise self._error("invalid escape sequence")
        raise self._error("unterminated string")


def load_sofer(source: str) -> Outline:
    """Parse the line format.

    Raises:
        FormatError: With the offending line number, if a line is malformed,
            repeats an id or names a parent that has not appeared yet.

    """
    outline = Outline()
    for line_number, line in enumerate(source.split("\n"), start=1):
        if not line.strip():
            continue
        fields = line.split(" ", 2)
        if len(fields) < 3:  # noqa: PLR2004
            msg = f"Line {line_number}: expected '<id> <parent> <attributes> <text>'"
            raise FormatError(msg)
        node_id, parent, rest = fields

        if rest == _NO_FIELD or rest.startswith(f"{_NO_FIELD} "):
            attributes: list[tuple[str, MetaValue]] = []
            text = rest[len(_NO_FIELD) + 1 :]
        else:
            reader = _AttributeReader(rest, line_number)
            attributes = reader.read_all()
            text = rest[reader.position + 1 :]

        parent_id = None if parent == _NO_FIELD else parent
        if parent_id is not None and parent_id not in outline:
            msg = f"Line {line_number}: parent '{parent_id}' must appear before its children"
            raise FormatError(msg)
        try:
            node = outline.create_node(parent_id, text=_unescape_text(text, line_number), node_id=node_id)
        except ValueError as e:
            msg = f"Line {line_number}: {e}"
            raise FormatError(msg) from e

        for key, value in attributes:
            outline.set_metadata(node.id, key, value)

    outline.drain_changes()
    return outline


# =============================================================================
# Dispatch on suffix
# =============================================================================


def load_outline(path: Path | str) -> Outline:
    """Load an outline, choosing the format by file suffix.

    Raises:
        FormatError: If the suffix is unknown or the content is malformed.

    """
    path = Path(path)
    match path.suffix:
        case ".toml":
            return load_outline_toml(path)
        case ".sofer":
            outline = load_sofer(path.read_text(encoding="utf-8"))
            logger.debug("Loaded %d node(s) from %s", len(outline), path)
            return outline
        case _:
            msg = f"Unknown outline format '{path.suffix}' (expected .toml or .sofer)"
            raise FormatError(msg)


def save_outline(outline: Outline, path: Path | str, *, include_values: bool = False) -> None:
    """Save an outline, choosing the format by file suffix.

    Computed values can only be stored in TOML documents.

    Raises:
        FormatError: If the suffix is unknown.

    """
    path = Path(path)
    match path.suffix:
        case ".toml":
            export_outline_toml(outline, path, include_values=include_values)
        case ".sofer":
            path.write_text(dump_sofer(outline), encoding="utf-8")
            logger.debug("Exported %d node(s) to %s", len(outline), path)
        case _:
            msg = f"Unknown outline format '{path.suffix}' (expected .toml or .sofer)"
            raise FormatError(msg)
