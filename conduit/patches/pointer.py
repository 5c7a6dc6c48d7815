"""JSON Pointer (RFC 6901) navigation over plain dicts and lists."""

from typing import Any

from conduit.exceptions import PathUnresolvableError

_MISSING = object()
_ABSENT = object()


def parse_pointer(path: str) -> list[str]:
    """``"/steps/0/id"`` -> ``["steps", "0", "id"]``. The empty pointer is the root."""
    if path == "":
        return []
    if not path.startswith("/"):
        raise PathUnresolvableError(f"path must start with '/', got '{path}'", path=path)
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def escape_token(token: Any) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def _array_index(token: str, length: int, path: str, allow_end: bool = False) -> int:
    if token == "-" and allow_end:
        return length
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise PathUnresolvableError(f"'{token}' is not a valid array index at '{path}'", path=path)
    index = int(token)
    upper = length if allow_end else length - 1
    if index > upper:
        raise PathUnresolvableError(
            f"array index {index} out of range (length {length}) at '{path}'", path=path
        )
    return index


def get(document: Any, tokens: list[str], path: str, default: Any = _MISSING) -> Any:
    """Value at *tokens*. Raises PathUnresolvableError unless *default* is given."""
    node = document
    for token in tokens:
        if isinstance(node, dict):
            if token not in node:
                if default is not _MISSING:
                    return default
                raise PathUnresolvableError(f"path '{path}' does not exist", path=path)
            node = node[token]
        elif isinstance(node, list):
            try:
                node = node[_array_index(token, len(node), path)]
            except PathUnresolvableError:
                if default is not _MISSING:
                    return default
                raise
        else:
            if default is not _MISSING:
                return default
            raise PathUnresolvableError(f"path '{path}' does not exist", path=path)
    return node


def exists(document: Any, tokens: list[str]) -> bool:
    return get(document, tokens, "", default=_ABSENT) is not _ABSENT


def _parent(document: Any, tokens: list[str], path: str) -> Any:
    parent = get(document, tokens[:-1], path)
    if not isinstance(parent, (dict, list)):
        raise PathUnresolvableError(f"parent of '{path}' is not an object or array", path=path)
    return parent


def add(document: Any, tokens: list[str], value: Any, path: str) -> Any:
    """RFC 6902 add. Returns the (possibly new) root."""
    if not tokens:
        return value
    parent = _parent(document, tokens, path)
    last = tokens[-1]
    if isinstance(parent, list):
        parent.insert(_array_index(last, len(parent), path, allow_end=True), value)
    else:
        parent[last] = value
    return document


def remove(document: Any, tokens: list[str], path: str) -> Any:
    """RFC 6902 remove. Returns the removed value."""
    if not tokens:
        raise PathUnresolvableError("cannot remove the document root", path=path)
    parent = _parent(document, tokens, path)
    last = tokens[-1]
    if isinstance(parent, list):
        return parent.pop(_array_index(last, len(parent), path))
    if last not in parent:
        raise PathUnresolvableError(f"cannot remove '{path}': path does not exist", path=path)
    return parent.pop(last)


def replace(document: Any, tokens: list[str], value: Any, path: str) -> Any:
    """Replace an existing, non-null value. Returns the (possibly new) root."""
    current = get(document, tokens, path, default=None)
    if current is None:
        raise PathUnresolvableError(
            f"cannot replace '{path}': no value is set there. Use 'add' for fields that may be unset",
            path=path,
        )
    if not tokens:
        return value
    parent = _parent(document, tokens, path)
    last = tokens[-1]
    if isinstance(parent, list):
        parent[_array_index(last, len(parent), path)] = value
    else:
        parent[last] = value
    return document
