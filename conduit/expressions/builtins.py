"""Built-in globals and prototype methods available inside expressions.

No I/O, no clocks, no randomness: evaluation must be deterministic.
"""

import base64
import functools
import json
import math
import re
from typing import Any, Callable
from urllib.parse import quote, unquote

from conduit.exceptions import ExpressionError
from conduit.expressions.values import (
    NAN, UNDEFINED, Function, from_python, is_callable, is_nullish, is_number,
    json_stringify, normalize_number, strict_equals, to_number, to_string,
    truthy,
)


class Builtin(Function):
    """A Python implementation exposed as an expression function.

    ``impl(interp, this, args)``; ``this`` is the receiver for prototype
    methods and UNDEFINED for globals.
    """
    __slots__ = ("name", "impl", "this")

    def __init__(self, name: str, impl: Callable, this: Any = UNDEFINED):
        self.name = name
        self.impl = impl
        self.this = this

    def invoke(self, interp: Any, args: list) -> Any:
        return self.impl(interp, self.this, args)

    def __repr__(self) -> str:
        return f"<builtin {self.name}>"


def _arg(args: list, index: int, default: Any = UNDEFINED) -> Any:
    return args[index] if index < len(args) else default


def _int_arg(args: list, index: int, default: int) -> int:
    value = _arg(args, index)
    if value is UNDEFINED:
        return default
    num = to_number(value)
    if isinstance(num, float) and (math.isnan(num)):
        return 0
    if isinstance(num, float) and math.isinf(num):
        return 2 ** 53 if num > 0 else -(2 ** 53)
    return int(num)


def _slice_bounds(length: int, args: list) -> tuple[int, int]:
    start = _int_arg(args, 0, 0)
    end = _int_arg(args, 1, length)
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = max(length + end, 0)
    return min(start, length), min(end, length)


def _callback(interp: Any, args: list, method: str) -> Function:
    fn = _arg(args, 0)
    if not is_callable(fn):
        raise interp.type_error(f"{to_string(fn)} is not a function (in {method})")
    return fn


# ── Array.prototype ──

def _array_map(interp, this, args):
    fn = _callback(interp, args, "map")
    return [interp.call(fn, [v, i, this]) for i, v in enumerate(list(this))]


def _array_filter(interp, this, args):
    fn = _callback(interp, args, "filter")
    return [v for i, v in enumerate(list(this)) if truthy(interp.call(fn, [v, i, this]))]


def _array_find(interp, this, args):
    fn = _callback(interp, args, "find")
    for i, v in enumerate(list(this)):
        if truthy(interp.call(fn, [v, i, this])):
            return v
    return UNDEFINED


def _array_find_index(interp, this, args):
    fn = _callback(interp, args, "findIndex")
    for i, v in enumerate(list(this)):
        if truthy(interp.call(fn, [v, i, this])):
            return i
    return -1


def _array_some(interp, this, args):
    fn = _callback(interp, args, "some")
    return any(truthy(interp.call(fn, [v, i, this])) for i, v in enumerate(list(this)))


def _array_every(interp, this, args):
    fn = _callback(interp, args, "every")
    return all(truthy(interp.call(fn, [v, i, this])) for i, v in enumerate(list(this)))


def _array_for_each(interp, this, args):
    fn = _callback(interp, args, "forEach")
    for i, v in enumerate(list(this)):
        interp.call(fn, [v, i, this])
    return UNDEFINED


def _array_reduce(interp, this, args):
    fn = _callback(interp, args, "reduce")
    items = list(this)
    start = 0
    if len(args) >= 2:
        acc = args[1]
    elif items:
        acc = items[0]
        start = 1
    else:
        raise interp.type_error("Reduce of empty array with no initial value")
    for i in range(start, len(items)):
        acc = interp.call(fn, [acc, items[i], i, this])
    return acc


def _array_includes(interp, this, args):
    target = _arg(args, 0)
    for v in this:
        if strict_equals(v, target):
            return True
        if isinstance(v, float) and isinstance(target, float) and math.isnan(v) and math.isnan(target):
            return True
    return False


def _array_index_of(interp, this, args):
    target = _arg(args, 0)
    for i, v in enumerate(this):
        if strict_equals(v, target):
            return i
    return -1


def _array_join(interp, this, args):
    sep = _arg(args, 0)
    sep = "," if sep is UNDEFINED else to_string(sep)
    parts = ["" if is_nullish(v) else to_string(v) for v in this]
    interp.check_size(sum(map(len, parts)) + len(sep) * max(len(parts) - 1, 0))
    return sep.join(parts)


def _array_slice(interp, this, args):
    start, end = _slice_bounds(len(this), args)
    return this[start:end]


def _array_concat(interp, this, args):
    out = list(this)
    for a in args:
        if isinstance(a, list):
            out.extend(a)
        else:
            out.append(a)
    interp.check_size(len(out))
    return out


def _flatten(items: list, depth: int) -> list:
    out = []
    for v in items:
        if isinstance(v, list) and depth > 0:
            out.extend(_flatten(v, depth - 1))
        else:
            out.append(v)
    return out


def _array_flat(interp, this, args):
    return _flatten(this, _int_arg(args, 0, 1))


def _array_flat_map(interp, this, args):
    return _flatten(_array_map(interp, this, args), 1)


def _default_sort_key(v: Any) -> tuple:
    # undefined sorts last, everything else by string form
    return (1, "") if v is UNDEFINED else (0, to_string(v))


def _array_sort(interp, this, args):
    fn = _arg(args, 0)
    if fn is UNDEFINED:
        this.sort(key=_default_sort_key)
        return this

    def _cmp(a, b):
        result = to_number(interp.call(fn, [a, b]))
        if isinstance(result, float) and math.isnan(result):
            return 0
        return -1 if result < 0 else (1 if result > 0 else 0)

    this.sort(key=functools.cmp_to_key(_cmp))
    return this


def _array_reverse(interp, this, args):
    this.reverse()
    return this


def _array_push(interp, this, args):
    this.extend(args)
    return len(this)


def _array_pop(interp, this, args):
    return this.pop() if this else UNDEFINED


def _array_shift(interp, this, args):
    return this.pop(0) if this else UNDEFINED


def _array_unshift(interp, this, args):
    this[0:0] = args
    return len(this)


def _array_at(interp, this, args):
    idx = _int_arg(args, 0, 0)
    if idx < 0:
        idx += len(this)
    return this[idx] if 0 <= idx < len(this) else UNDEFINED


def _array_keys(interp, this, args):
    return list(range(len(this)))


def _array_entries(interp, this, args):
    return [[i, v] for i, v in enumerate(this)]


def _array_to_string(interp, this, args):
    return to_string(this)


ARRAY_METHODS = {
    "map": _array_map,
    "filter": _array_filter,
    "find": _array_find,
    "findIndex": _array_find_index,
    "some": _array_some,
    "every": _array_every,
    "forEach": _array_for_each,
    "reduce": _array_reduce,
    "includes": _array_includes,
    "indexOf": _array_index_of,
    "join": _array_join,
    "slice": _array_slice,
    "concat": _array_concat,
    "flat": _array_flat,
    "flatMap": _array_flat_map,
    "sort": _array_sort,
    "reverse": _array_reverse,
    "push": _array_push,
    "pop": _array_pop,
    "shift": _array_shift,
    "unshift": _array_unshift,
    "at": _array_at,
    "keys": _array_keys,
    "entries": _array_entries,
    "toString": _array_to_string,
}


# ── String.prototype ──

def _str_arg(args: list, index: int) -> str:
    return to_string(_arg(args, index))


def _string_split(interp, this, args):
    sep = _arg(args, 0)
    if sep is UNDEFINED:
        return [this]
    sep = to_string(sep)
    parts = list(this) if sep == "" else this.split(sep)
    limit = _arg(args, 1)
    if limit is not UNDEFINED:
        parts = parts[:max(int(to_number(limit)), 0)]
    return parts


def _string_replace(interp, this, args):
    pattern = _str_arg(args, 0)
    replacement = _arg(args, 1)
    idx = this.find(pattern)
    if idx == -1:
        return this
    if is_callable(replacement):
        rep = to_string(interp.call(replacement, [pattern, idx, this]))
    else:
        rep = to_string(replacement)
    return this[:idx] + rep + this[idx + len(pattern):]


def _string_replace_all(interp, this, args):
    pattern = _str_arg(args, 0)
    replacement = _arg(args, 1)
    if is_callable(replacement):
        out, pos = [], 0
        while True:
            idx = this.find(pattern, pos)
            if idx == -1 or pattern == "":
                break
            out.append(this[pos:idx])
            out.append(to_string(interp.call(replacement, [pattern, idx, this])))
            pos = idx + len(pattern)
        out.append(this[pos:])
        return "".join(out)
    return this.replace(pattern, to_string(replacement))


def _string_slice(interp, this, args):
    start, end = _slice_bounds(len(this), args)
    return this[start:end]


def _string_substring(interp, this, args):
    length = len(this)
    start = min(max(_int_arg(args, 0, 0), 0), length)
    end = min(max(_int_arg(args, 1, length), 0), length)
    if start > end:
        start, end = end, start
    return this[start:end]


def _string_index_of(interp, this, args):
    return this.find(_str_arg(args, 0), max(_int_arg(args, 1, 0), 0))


def _string_pad(left: bool):
    def _pad(interp, this, args):
        width = _int_arg(args, 0, 0)
        fill = _arg(args, 1)
        fill = " " if fill is UNDEFINED else to_string(fill)
        if width <= len(this) or not fill:
            return this
        needed = width - len(this)
        interp.tick(interp.check_size(width) - len(this))
        padding = (fill * (needed // len(fill) + 1))[:needed]
        return padding + this if left else this + padding
    return _pad


def _string_repeat(interp, this, args):
    count = max(_int_arg(args, 0, 0), 0)
    interp.tick(interp.check_size(len(this) * count))
    return this * count


def _string_concat(interp, this, args):
    parts = [this] + [to_string(a) for a in args]
    interp.check_size(sum(map(len, parts)))
    return "".join(parts)


def _string_char_at(interp, this, args):
    idx = _int_arg(args, 0, 0)
    return this[idx] if 0 <= idx < len(this) else ""


def _string_at(interp, this, args):
    idx = _int_arg(args, 0, 0)
    if idx < 0:
        idx += len(this)
    return this[idx] if 0 <= idx < len(this) else UNDEFINED


STRING_METHODS = {
    "toUpperCase": lambda interp, this, args: this.upper(),
    "toLowerCase": lambda interp, this, args: this.lower(),
    "trim": lambda interp, this, args: this.strip(),
    "trimStart": lambda interp, this, args: this.lstrip(),
    "trimEnd": lambda interp, this, args: this.rstrip(),
    "split": _string_split,
    "includes": lambda interp, this, args: _str_arg(args, 0) in this,
    "startsWith": lambda interp, this, args: this.startswith(_str_arg(args, 0), max(_int_arg(args, 1, 0), 0)),
    "endsWith": lambda interp, this, args: this.endswith(_str_arg(args, 0)),
    "replace": _string_replace,
    "replaceAll": _string_replace_all,
    "slice": _string_slice,
    "substring": _string_substring,
    "indexOf": _string_index_of,
    "lastIndexOf": lambda interp, this, args: this.rfind(_str_arg(args, 0)),
    "padStart": _string_pad(left=True),
    "padEnd": _string_pad(left=False),
    "charAt": _string_char_at,
    "at": _string_at,
    "repeat": _string_repeat,
    "concat": _string_concat,
    "toString": lambda interp, this, args: this,
}


# ── Number.prototype ──

def _number_to_fixed(interp, this, args):
    digits = _int_arg(args, 0, 0)
    if not 0 <= digits <= 100:
        raise ExpressionError("RangeError: toFixed() digits argument must be between 0 and 100", expression=interp.source)
    return f"{this:.{digits}f}"


NUMBER_METHODS = {
    "toFixed": _number_to_fixed,
    "toString": lambda interp, this, args: to_string(this),
}


# ── Globals ──

def _object_arg(interp, args: list, fn: str) -> Any:
    value = _arg(args, 0)
    if is_nullish(value):
        raise interp.type_error(f"Cannot convert undefined or null to object (in Object.{fn})")
    return value


def _object_keys(interp, this, args):
    value = _object_arg(interp, args, "keys")
    if isinstance(value, dict):
        return list(value.keys())
    if isinstance(value, (list, str)):
        return [str(i) for i in range(len(value))]
    return []


def _object_values(interp, this, args):
    value = _object_arg(interp, args, "values")
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, (list, str)):
        return list(value)
    return []


def _object_entries(interp, this, args):
    value = _object_arg(interp, args, "entries")
    if isinstance(value, dict):
        return [[k, v] for k, v in value.items()]
    if isinstance(value, (list, str)):
        return [[str(i), v] for i, v in enumerate(value)]
    return []


def _object_from_entries(interp, this, args):
    out = {}
    for entry in _arg(args, 0, []) or []:
        if isinstance(entry, list) and entry:
            out[to_string(entry[0])] = entry[1] if len(entry) > 1 else UNDEFINED
    return out


def _object_assign(interp, this, args):
    target = _object_arg(interp, args, "assign")
    for source in args[1:]:
        if isinstance(source, dict):
            target.update(source)
    return target


def _array_from(interp, this, args):
    value = _arg(args, 0)
    if isinstance(value, (list, str)):
        items = list(value)
    elif isinstance(value, dict) and "length" in value:
        length = max(_int_arg([value["length"]], 0, 0), 0)
        interp.tick(interp.check_size(length))
        items = [UNDEFINED] * length
    else:
        items = []
    fn = _arg(args, 1)
    if is_callable(fn):
        return [interp.call(fn, [v, i]) for i, v in enumerate(items)]
    return items


def _json_parse(interp, this, args):
    text = _str_arg(args, 0)
    try:
        return from_python(json.loads(text))
    except json.JSONDecodeError as exc:
        raise interp.type_error(f"JSON.parse: {exc.msg} at position {exc.pos}")


_FLOAT_PREFIX = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def _parse_int(interp, this, args):
    text = _str_arg(args, 0).strip()
    radix = _int_arg(args, 1, 10) or 10
    sign = 1
    if text and text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if radix == 16 and text.lower().startswith("0x"):
        text = text[2:]
    digits = ""
    for ch in text:
        try:
            if int(ch, radix) >= 0:
                digits += ch
        except ValueError:
            break
    return sign * int(digits, radix) if digits else NAN


def _parse_float(interp, this, args):
    text = _str_arg(args, 0).strip()
    if text.startswith(("Infinity", "+Infinity")):
        return math.inf
    if text.startswith("-Infinity"):
        return -math.inf
    match = _FLOAT_PREFIX.match(text)
    return normalize_number(float(match.group(0))) if match else NAN


def _math(fn: Callable) -> Callable:
    def _impl(interp, this, args):
        nums = [to_number(a) for a in args]
        if any(isinstance(x, float) and math.isnan(x) for x in nums):
            return NAN
        return normalize_number(fn(*nums))
    return _impl


def _math_round(x):
    return math.floor(x + 0.5)


def _is_nan(interp, this, args):
    value = to_number(_arg(args, 0))
    return isinstance(value, float) and math.isnan(value)


def _btoa(interp, this, args):
    return base64.b64encode(_str_arg(args, 0).encode("latin-1")).decode("ascii")


def _atob(interp, this, args):
    return base64.b64decode(_str_arg(args, 0)).decode("latin-1")


def _namespace(name: str, members: dict[str, Callable]) -> dict[str, Any]:
    return {key: Builtin(f"{name}.{key}", impl) for key, impl in members.items()}


def make_globals() -> dict[str, Any]:
    """Fresh global scope for one evaluation."""
    return {
        "undefined": UNDEFINED,
        "NaN": NAN,
        "Infinity": math.inf,
        "Object": _namespace("Object", {
            "keys": _object_keys,
            "values": _object_values,
            "entries": _object_entries,
            "fromEntries": _object_from_entries,
            "assign": _object_assign,
        }),
        "Array": _namespace("Array", {
            "isArray": lambda interp, this, args: isinstance(_arg(args, 0), list),
            "from": _array_from,
        }),
        "JSON": _namespace("JSON", {
            "stringify": lambda interp, this, args: json_stringify(_arg(args, 0), _arg(args, 2, None)),
            "parse": _json_parse,
        }),
        "Math": {
            **_namespace("Math", {
                "max": _math(lambda *xs: max(xs) if xs else -math.inf),
                "min": _math(lambda *xs: min(xs) if xs else math.inf),
                "round": _math(_math_round),
                "floor": _math(math.floor),
                "ceil": _math(math.ceil),
                "abs": _math(abs),
                "pow": _math(lambda a, b: math.pow(a, b)),
                "sqrt": _math(math.sqrt),
                "trunc": _math(math.trunc),
                "sign": _math(lambda x: (x > 0) - (x < 0)),
            }),
            "PI": math.pi,
            "E": math.e,
        },
        "String": Builtin("String", lambda interp, this, args: to_string(_arg(args, 0, ""))),
        "Number": Builtin("Number", lambda interp, this, args: to_number(_arg(args, 0, 0))),
        "Boolean": Builtin("Boolean", lambda interp, this, args: truthy(_arg(args, 0))),
        "parseInt": Builtin("parseInt", _parse_int),
        "parseFloat": Builtin("parseFloat", _parse_float),
        "isNaN": Builtin("isNaN", _is_nan),
        "encodeURIComponent": Builtin(
            "encodeURIComponent",
            lambda interp, this, args: quote(_str_arg(args, 0), safe="-_.!~*'()"),
        ),
        "decodeURIComponent": Builtin(
            "decodeURIComponent",
            lambda interp, this, args: unquote(_str_arg(args, 0)),
        ),
        "btoa": Builtin("btoa", _btoa),
        "atob": Builtin("atob", _atob),
    }


def get_method(interp: Any, obj: Any, name: str) -> Any:
    """Prototype lookup for arrays, strings and numbers; UNDEFINED if absent."""
    if isinstance(obj, list):
        impl = ARRAY_METHODS.get(name)
    elif isinstance(obj, str):
        impl = STRING_METHODS.get(name)
    elif is_number(obj):
        impl = NUMBER_METHODS.get(name)
    elif isinstance(obj, dict) and name == "hasOwnProperty":
        return Builtin(name, lambda i, this, args: to_string(_arg(args, 0)) in this, obj)
    else:
        impl = None
    if impl is None:
        return UNDEFINED
    return Builtin(name, impl, obj)
