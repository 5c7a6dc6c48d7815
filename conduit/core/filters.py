"""Response filters: regex rules applied to a tool's final output."""

import logging
import re
from typing import Any

from conduit.exceptions import ResponseFilterError
from conduit.types import FilterAction, FilterTarget, ResponseFilter

logger = logging.getLogger(__name__)

_REMOVED = object()


def _compile(rule: ResponseFilter) -> re.Pattern:
    try:
        return re.compile(rule.pattern)
    except re.error as exc:
        raise ResponseFilterError(
            f"Response filter '{rule.name or rule.id}' has an invalid pattern: {exc}",
            filter_id=rule.id,
            details={"pattern": rule.pattern},
        ) from exc


def _fail(rule: ResponseFilter, path: str) -> ResponseFilterError:
    return ResponseFilterError(
        f"Response filter '{rule.name or rule.id}' matched at '{path or '/'}'",
        filter_id=rule.id,
        path=path,
        details={"filter_id": rule.id, "path": path or "/"},
    )


def _escape(key: Any) -> str:
    return str(key).replace("~", "~0").replace("/", "~1")


def _apply(rule: ResponseFilter, pattern: re.Pattern, value: Any, path: str) -> Any:
    check_keys = rule.target in (FilterTarget.KEYS, FilterTarget.BOTH)
    check_values = rule.target in (FilterTarget.VALUES, FilterTarget.BOTH)

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, child in value.items():
            child_path = f"{path}/{_escape(key)}"
            if check_keys and pattern.search(str(key)):
                if rule.action == FilterAction.FAIL:
                    raise _fail(rule, child_path)
                if rule.action == FilterAction.REMOVE:
                    continue
                out[key] = rule.mask_value
                continue
            filtered = _apply(rule, pattern, child, child_path)
            if filtered is not _REMOVED:
                out[key] = filtered
        return out

    if isinstance(value, list):
        items = (_apply(rule, pattern, child, f"{path}/{i}") for i, child in enumerate(value))
        return [item for item in items if item is not _REMOVED]

    if check_values and isinstance(value, str) and pattern.search(value):
        if rule.action == FilterAction.FAIL:
            raise _fail(rule, path)
        if rule.action == FilterAction.REMOVE:
            return _REMOVED
        return pattern.sub(rule.mask_value, value)
    return value


def apply_response_filters(data: Any, filters: list[ResponseFilter]) -> Any:
    """Apply each enabled filter in order and return the filtered copy.

    Raises:
        ResponseFilterError: a ``fail`` filter matched, or a pattern is invalid.
    """
    for rule in filters:
        if not rule.enabled:
            continue
        data = _apply(rule, _compile(rule), data, "")
        if data is _REMOVED:
            data = None
        logger.debug(f"[Filters] applied '{rule.name or rule.id}' ({rule.target.value}/{rule.action.value})")
    return data
