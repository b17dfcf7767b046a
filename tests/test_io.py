"""Tests for reading and writing outlines."""

from pathlib import Path

import pytest

from sofer import (
    Evaluator,
    FormatError,
    NodeRef,
    Outline,
    dump_sofer,
    export_outline_toml,
    load_outline,
    load_outline_toml,
    load_sofer,
    outline_from_dict,
    outline_to_dict,
    save_outline,
)


@pytest.fixture
def outline() -> Outline:
    outline = Outline()
    total = outline.create_node(text='Total @ sum(c.meta["count"] for c in children)', node_id="total")
    apples = outline.create_node(total.id, text="apples", node_id="apples")
    outline.create_node(total.id, text="pears\nand more", node_id="pears")
    outline.set_metadata(apples.id, "count", 3)
    outline.set_metadata(apples.id, "ripe", True)
    outline.set_metadata(apples.id, "note", 'say "hi"; ok')
    outline.set_metadata("pears", "count", 1.5)
    outline.set_metadata("pears", "owner", NodeRef("apples"))
    outline.create_node(text="", node_id="empty")
    outline.drain_changes()
    return outline


def snapshot(outline: Outline) -> list[tuple[str, str | None, str, dict[str, object]]]:
    return [(node.id, node.parent_id, node.text, dict(node.metadata)) for node in outline.walk()]


class TestTomlDocument:
    """Tests for the TOML document format."""

    def test_to_dict(self, outline: Outline) -> None:
        data = outline_to_dict(outline)
        assert data["version"] == 1
        assert [node["id"] for node in data["nodes"]] == ["total", "empty"]
        pears = data["nodes"][0]["children"][1]
        assert pears["meta"] == {"count": 1.5}
        assert pears["refs"] == {"owner": "apples"}
        assert "value" not in pears

    def test_from_dict_keeps_structure(self, outline: Outline) -> None:
        loaded = outline_from_dict(outline_to_dict(outline))
        assert snapshot(loaded) == snapshot(outline)
        assert not loaded.has_changes

    def test_values_are_exported(self, outline: Outline) -> None:
        Evaluator(outline).evaluate()
        data = outline_to_dict(outline, include_values=True)
        total = data["nodes"][0]
        assert total["value"] == 4.5
        assert total["state"] == "clean"

    def test_stored_values_are_ignored_on_load(self, outline: Outline) -> None:
        Evaluator(outline).evaluate()
        loaded = outline_from_dict(outline_to_dict(outline, include_values=True))
        assert not loaded.get("total").has_value

    def test_file_round_trip(self, outline: Outline, tmp_path: Path) -> None:
        path = tmp_path / "outline.toml"
        export_outline_toml(outline, path)
        assert snapshot(load_outline_toml(path)) == snapshot(outline)

    def test_duplicate_id(self) -> None:
        data = {"nodes": [{"id": "a"}, {"id": "a"}]}
        with pytest.raises(FormatError, match="already in use"):
            outline_from_dict(data)

    def test_unknown_field(self) -> None:
        with pytest.raises(FormatError, match="Invalid outline document"):
            outline_from_dict({"nodes": [{"id": "a", "colour": "red"}]})

    def test_unsupported_version(self) -> None:
        with pytest.raises(FormatError, match="version"):
            outline_from_dict({"version": 2, "nodes": []})

    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.toml"
        path.write_text("[[nodes]\n")
        with pytest.raises(FormatError, match="Invalid TOML"):
            load_outline_toml(path)


class TestLineFormat:
    """Tests for the .sofer line format."""

    def test_dump(self, outline: Outline) -> None:
        lines = dump_sofer(outline).splitlines()
        assert lines[0] == 'total - - Total @ sum(c.meta["count"] for c in children)'
        assert lines[1] == 'apples total count=3;ripe=T;note="say \\"hi\\"; ok"; apples'
        assert lines[2] == "pears total count=1.5;owner=#apples; pears\\nand more"
        assert lines[3] == "empty - - "

    def test_load_keeps_structure(self, outline: Outline) -> None:
        assert snapshot(load_sofer(dump_sofer(outline))) == snapshot(outline)

    def test_blank_lines_are_skipped(self) -> None:
        loaded = load_sofer("\na - - first\n\nb a F=F; second\n")
        assert loaded.children("a") == ("b",)
        assert loaded.get("b").metadata == {"F": False}

    def test_parent_must_come_first(self) -> None:
        with pytest.raises(FormatError, match="Line 1: parent 'b'"):
            load_sofer("a b - child\nb - - parent\n")

    def test_duplicate_id(self) -> None:
        with pytest.raises(FormatError, match="Line 2"):
            load_sofer("a - - one\na - - two\n")

    @pytest.mark.parametrize(
        "attributes",
        ['k="open;', "k=1", "=1;", "k=abc;", 'k="bad\\q";'],
    )
    def test_malformed_attributes(self, attributes: str) -> None:
        with pytest.raises(FormatError, match="Line 1"):
            load_sofer(f"a - {attributes} text\n")

    def test_invalid_text_escape(self) -> None:
        with pytest.raises(FormatError, match="invalid escape"):
            load_sofer("a - - bad \\t escape\n")

    def test_key_that_cannot_be_stored(self) -> None:
        outline = Outline()
        node = outline.create_node()
        outline.set_metadata(node.id, "two words", 1)
        with pytest.raises(ValueError, match="cannot be stored"):
            dump_sofer(outline)

    def test_non_finite_number(self) -> None:
        outline = Outline()
        node = outline.create_node()
        outline.set_metadata(node.id, "x", float("inf"))
        with pytest.raises(ValueError, match="non-finite"):
            dump_sofer(outline)


class TestDispatch:
    """Tests for choosing the format by suffix."""

    @pytest.mark.parametrize("name", ["outline.toml", "outline.sofer"])
    def test_save_and_load(self, outline: Outline, tmp_path: Path, name: str) -> None:
        path = tmp_path / name
        save_outline(outline, path)
        assert snapshot(load_outline(path)) == snapshot(outline)

    def test_unknown_suffix(self, outline: Outline, tmp_path: Path) -> None:
        with pytest.raises(FormatError, match="Unknown outline format"):
            save_outline(outline, tmp_path / "outline.json")
        with pytest.raises(FormatError, match="Unknown outline format"):
            load_outline(tmp_path / "outline.json")
