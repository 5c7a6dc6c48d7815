"""Load tool documents, payloads and patch batches from JSON or YAML files."""

import json
from pathlib import Path
from typing import Any, Union

import yaml
from pydantic import ValidationError

from conduit.exceptions import ToolLoadError
from conduit.types import Tool

_YAML_SUFFIXES = {".yaml", ".yml"}


def load_document(path: Union[str, Path]) -> Any:
    """Parse a JSON or YAML file. ``.yaml``/``.yml`` are YAML, everything else JSON.

    Raises:
        ToolLoadError: missing file or unparseable content.
    """
    p = Path(path)
    if not p.exists():
        raise ToolLoadError(f"File not found: {p}", source=str(p))
    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() in _YAML_SUFFIXES:
            return yaml.safe_load(text)
        return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ToolLoadError(f"Could not parse {p.name}: {exc}", source=str(p)) from exc


def parse_tool(document: Any, source: str = "<document>") -> Tool:
    """Validate a tool document (camelCase, legacy keys accepted).

    Raises:
        ToolLoadError: the document is not a valid tool. ``details["errors"]``
            carries pydantic's error list.
    """
    if not isinstance(document, dict):
        raise ToolLoadError(f"{source}: a tool document must be an object", source=source)
    try:
        return Tool.model_validate(document)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ToolLoadError(
            f"{source}: invalid tool document ({len(errors)} error(s)): {'; '.join(errors[:5])}",
            source=source,
            details={"errors": errors},
        ) from exc


def load_tool(path: Union[str, Path]) -> Tool:
    """Load and validate a tool from a JSON or YAML file."""
    return parse_tool(load_document(path), source=str(path))
