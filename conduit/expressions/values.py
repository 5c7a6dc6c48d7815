"""Runtime value model for the expression interpreter.

Values are plain Python data: ``dict`` for objects, ``list`` for arrays,
``None`` for null, ``int``/``float`` for numbers, ``str``, ``bool``. The
``UNDEFINED`` sentinel stands in for a missing value so that JSON ``null``
and "absent" stay distinguishable.
"""

import json
import math
from typing import Any


class _Undefined:
    __slots__ = ()

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

NAN = float("nan")


def is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Function:
    """Base for anything callable from inside an expression."""
    __slots__ = ()
    name = "anonymous"

    def invoke(self, interp: Any, args: list) -> Any:
        raise NotImplementedError


def is_callable(value: Any) -> bool:
    return isinstance(value, Function)


def truthy(value: Any) -> bool:
    """JS truthiness: empty arrays and objects are truthy, NaN is not."""
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def normalize_number(value: Any) -> Any:
    """Collapse integral floats to int so ``2.0`` prints as ``2``."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def format_number(value: Any) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        value = normalize_number(value)
    return str(value) if isinstance(value, int) else repr(value)


def to_string(value: Any) -> str:
    """``String(value)``."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ",".join("" if is_nullish(v) else to_string(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    if is_callable(value):
        return "function"
    return str(value)


def to_number(value: Any) -> Any:
    """``Number(value)``."""
    if isinstance(value, bool):
        return 1 if value else 0
    if is_number(value):
        return value
    if value is None:
        return 0
    if value is UNDEFINED:
        return NAN
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return normalize_number(float(text)) if any(c in text for c in ".eE") else int(text)
        except ValueError:
            if text in ("Infinity", "+Infinity"):
                return math.inf
            if text == "-Infinity":
                return -math.inf
            return NAN
    if isinstance(value, list):
        if not value:
            return 0
        if len(value) == 1:
            return to_number(to_string(value[0]))
    return NAN


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if is_callable(value):
        return "function"
    return "object"


def strict_equals(left: Any, right: Any) -> bool:
    """``===``: same type and value; objects compare by identity."""
    if type_of(left) != type_of(right):
        return False
    if left is None or right is None:
        return left is right
    if is_number(left):
        return left == right
    if isinstance(left, (dict, list)) or is_callable(left):
        return left is right
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    """``==`` with the usual null/undefined and number/string coercions."""
    if is_nullish(left) or is_nullish(right):
        return is_nullish(left) and is_nullish(right)
    if type_of(left) == type_of(right):
        return strict_equals(left, right)
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return to_string(left) == to_string(right)
    return to_number(left) == to_number(right)


def compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
        if (isinstance(a, float) and math.isnan(a)) or (isinstance(b, float) and math.isnan(b)):
            return False
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


def to_json_value(value: Any) -> Any:
    """Convert to something ``json.dumps`` accepts, JSON.stringify style."""
    if isinstance(value, dict):
        return {
            str(k): to_json_value(v)
            for k, v in value.items()
            if v is not UNDEFINED and not is_callable(v)
        }
    if isinstance(value, (list, tuple)):
        return [None if (v is UNDEFINED or is_callable(v)) else to_json_value(v) for v in value]
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return normalize_number(value)
    if value is UNDEFINED:
        return None
    return value


def json_stringify(value: Any, indent: Any = None) -> Any:
    """``JSON.stringify``; returns UNDEFINED for undefined or functions."""
    if value is UNDEFINED or is_callable(value):
        return UNDEFINED
    if is_number(indent) and indent > 0:
        return json.dumps(to_json_value(value), indent=int(indent), ensure_ascii=False)
    if isinstance(indent, str) and indent:
        return json.dumps(to_json_value(value), indent=indent, ensure_ascii=False)
    return json.dumps(to_json_value(value), separators=(",", ":"), ensure_ascii=False)


def canonical_json(value: Any) -> str:
    """Serialisation used when a structured value is spliced into a string field."""
    return json.dumps(to_json_value(value), separators=(",", ":"), ensure_ascii=False)


def to_property_key(value: Any) -> Any:
    """Key used for ``obj[key]`` lookups on objects."""
    if isinstance(value, str):
        return value
    return to_string(value)


def from_python(value: Any) -> Any:
    """Numbers from outside (e.g. JSON) normalised, containers copied."""
    if isinstance(value, dict):
        return {k: from_python(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [from_python(v) for v in value]
    if isinstance(value, float):
        return normalize_number(value)
    return value


def to_python(value: Any) -> Any:
    """Strip interpreter-only values (UNDEFINED, functions) from a result."""
    if isinstance(value, dict):
        return {k: to_python(v) for k, v in value.items() if v is not UNDEFINED and not is_callable(v)}
    if isinstance(value, list):
        return [None if (v is UNDEFINED or is_callable(v)) else to_python(v) for v in value]
    return value
