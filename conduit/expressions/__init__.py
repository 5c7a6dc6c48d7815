"""Function-expression language used inside ``<<...>>`` placeholders."""

from conduit.expressions.sandbox import (
    ExpressionSandbox,
    compile_expression,
    is_function_expression,
    undefined_to_none,
)
from conduit.expressions.values import UNDEFINED, canonical_json, to_string

__all__ = [
    "ExpressionSandbox",
    "compile_expression",
    "is_function_expression",
    "undefined_to_none",
    "UNDEFINED",
    "canonical_json",
    "to_string",
]
