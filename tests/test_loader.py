"""Tool document loading from JSON and YAML files."""

import json

import pytest

from conduit.exceptions import ToolLoadError
from conduit.loader import load_document, load_tool, parse_tool


def test_load_json_tool(tmp_path, sample_tool):
    path = tmp_path / "tool.json"
    path.write_text(json.dumps(sample_tool))
    tool = load_tool(path)
    assert tool.id == "user-orders"
    assert [s.id for s in tool.steps] == ["getUsers", "getOrders"]
    assert tool.steps[0].config.system_id == "crm"


def test_load_yaml_tool(tmp_path):
    path = tmp_path / "tool.yaml"
    path.write_text(
        "id: greet\n"
        "steps:\n"
        "  - id: hello\n"
        "    config:\n"
        "      transformCode: \"(c) => 'hi ' + c.name\"\n"
        "finalTransform: \"(c) => c.hello.data\"\n"
    )
    tool = load_tool(path)
    assert tool.steps[0].config.type == "transform"
    assert tool.output_transform == "(c) => c.hello.data"


def test_missing_file(tmp_path):
    with pytest.raises(ToolLoadError, match="File not found"):
        load_document(tmp_path / "nope.json")


@pytest.mark.parametrize("name, content", [("bad.json", "{not json"), ("bad.yml", "a: [1, 2")])
def test_unparseable_file(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    with pytest.raises(ToolLoadError, match=f"Could not parse {name}") as exc_info:
        load_document(path)
    assert exc_info.value.source == str(path)


def test_invalid_tool_lists_errors():
    with pytest.raises(ToolLoadError, match="invalid tool document") as exc_info:
        parse_tool({"steps": [{"id": "s", "config": {"type": "request"}}]}, source="inline")
    errors = exc_info.value.details["errors"]
    assert any(e.startswith("id:") for e in errors)
    assert any("url" in e for e in errors)


def test_non_object_document():
    with pytest.raises(ToolLoadError, match="must be an object"):
        parse_tool(["not", "a", "tool"])
