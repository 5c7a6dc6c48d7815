"""Resolve ``<<expr>>`` placeholders against a variable context.

An expression is either a bare top-level key of the context, returned as-is,
or a one-parameter arrow function that receives the whole context. Keys are
tried first; nested lookups always go through a function.
"""

import base64
import logging
import re
from typing import Any, Mapping, Optional

from conduit.exceptions import ExpressionSyntaxError, ResolutionError
from conduit.expressions import (
    UNDEFINED, ExpressionSandbox, canonical_json, compile_expression,
    is_function_expression, to_string,
)
from conduit.types import RequestStepConfig

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"<<(.+?)>>", re.DOTALL)
_BARE_KEY = re.compile(r"^[A-Za-z_$][\w$\-]*$")
_SINGLE = re.compile(r"<<((?:(?!<<|>>).)+)>>", re.DOTALL)
_BASIC_AUTH = re.compile(r"^Basic\s+<<((?:(?!>>).)+)>>:<<((?:(?!>>).)+)>>$", re.DOTALL)
_ABSENT_STRINGS = frozenset({"undefined", "null", ""})


def format_available_keys(context: Mapping[str, Any]) -> str:
    keys = list(context.keys())
    return ", ".join(keys) if keys else "(none)"


def stringify(value: Any) -> str:
    """String form used when a resolved value is spliced into a string field."""
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    return to_string(value)


def is_absent(value: Any) -> bool:
    """Resolved values that mean "leave this key out"."""
    return value is None or value is UNDEFINED or stringify(value) in _ABSENT_STRINGS


class ExpressionResolver:
    """Resolves expressions and placeholder templates.

    Args:
        sandbox: Evaluator for function expressions. A default-budget
            :class:`ExpressionSandbox` is used when omitted.
    """

    def __init__(self, sandbox: Optional[ExpressionSandbox] = None):
        self.sandbox = sandbox or ExpressionSandbox()

    def resolve_expression(self, expression: str, context: Mapping[str, Any]) -> Any:
        """Resolve one expression (the text between ``<<`` and ``>>``).

        Raises:
            ResolutionError: unknown key, or the function body dereferenced
                something missing. Always lists the context's top-level keys.
            ExpressionSyntaxError: neither a bare key nor a function expression.
            SandboxTimeoutError: function exceeded its budget.
        """
        expr = expression.strip()
        if expr in context:
            return context[expr]

        if is_function_expression(expr):
            try:
                return self.sandbox.evaluate(expr, dict(context))
            except ResolutionError as exc:
                keys = list(context.keys())
                raise ResolutionError(
                    f"{exc} while evaluating '{_shorten(expr)}'. "
                    f"Available keys: {format_available_keys(context)}",
                    expression=expr,
                    available_keys=keys,
                ) from exc

        if _BARE_KEY.match(expr):
            raise ResolutionError(
                f"Variable '{expr}' not found. Available keys: {format_available_keys(context)}",
                expression=expr,
                available_keys=list(context.keys()),
            )

        # Surfaces the parser's own message when the text is broken JS
        compile_expression(expr)
        raise ExpressionSyntaxError(
            f"'{_shorten(expr)}' is neither a top-level key nor a function expression. "
            f"Use a key name or a function such as '(sourceData) => sourceData.{_first_segment(expr)}'",
            expression=expr,
        )

    def resolve_string(self, template: str, context: Mapping[str, Any]) -> Any:
        """Substitute every placeholder in *template*.

        A template that is exactly one placeholder keeps the native value
        (object, list, number). Otherwise the result is a string.
        """
        if "<<" not in template:
            return template

        whole = _SINGLE.fullmatch(template)
        if whole:
            return self.resolve_expression(whole.group(1), context)

        basic = _BASIC_AUTH.match(template.strip())
        if basic:
            return self._resolve_basic_auth(basic.group(1), basic.group(2), context)

        return PLACEHOLDER.sub(
            lambda m: stringify(self.resolve_expression(m.group(1), context)),
            template,
        )

    def _resolve_basic_auth(self, user_expr: str, password_expr: str, context: Mapping[str, Any]) -> str:
        user = stringify(self.resolve_expression(user_expr, context))
        password = stringify(self.resolve_expression(password_expr, context))
        token = base64.b64encode(f"{user}:{password}".encode()).decode("ascii")
        return f"Basic {token}"

    def resolve_value(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Recursively resolve placeholders inside strings, dicts and lists."""
        if isinstance(value, str):
            return self.resolve_string(value, context)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, context) for v in value]
        return value

    def resolve_mapping(self, mapping: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, str]:
        """Resolve a header or query map; absent values drop their key."""
        resolved: dict[str, str] = {}
        for key, raw in (mapping or {}).items():
            value = self.resolve_value(raw, context)
            if is_absent(value):
                logger.debug("[Resolver] dropping '%s': resolved to an absent value", key)
                continue
            resolved[key] = stringify(value)
        return resolved

    def resolve_request(self, config: RequestStepConfig, context: Mapping[str, Any]) -> dict[str, Any]:
        """Fully resolved inputs for one connector invocation."""
        url = self.resolve_string(config.url, context)
        body = config.body
        if body is not None:
            body = self.resolve_value(body, context)
            if body is UNDEFINED:
                body = None
        return {
            "url": stringify(url),
            "method": (config.method or "GET").upper(),
            "headers": self.resolve_mapping(config.headers, context),
            "query_params": self.resolve_mapping(config.query_params, context),
            "body": body,
        }


def find_placeholders(template: str) -> list[str]:
    """Expressions referenced by *template*, in order."""
    return [m.group(1).strip() for m in PLACEHOLDER.finditer(template or "")]


def _shorten(expr: str, limit: int = 120) -> str:
    return expr if len(expr) <= limit else expr[:limit] + "..."


def _first_segment(expr: str) -> str:
    match = re.match(r"[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*", expr)
    return match.group(0) if match else "value"
