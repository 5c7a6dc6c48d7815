"""Isolated evaluation of function-expression strings.

The sandbox parses a source string, requires it to be an arrow function,
and invokes it on deep copies of the supplied arguments. Nothing the
expression does can reach the caller's objects, the filesystem, the
network or the clock.
"""

import functools
import logging
from typing import Any, Optional

from conduit.config import config
from conduit.exceptions import ExpressionError, ExpressionSyntaxError, SandboxTimeoutError
from conduit.expressions import nodes as n
from conduit.expressions.interpreter import Closure, Interpreter
from conduit.expressions.parser import parse
from conduit.expressions.values import UNDEFINED, from_python, to_python

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1024)
def compile_expression(source: str) -> n.Node:
    """Parse *source* once; the AST is never mutated so it is safe to share."""
    return parse(source)


def is_function_expression(source: str) -> bool:
    """True when *source* parses as a single arrow function."""
    try:
        return isinstance(compile_expression(source.strip()), n.Arrow)
    except ExpressionSyntaxError:
        return False


class ExpressionSandbox:
    """Evaluate untrusted expressions with a step and wall-clock budget.

    Args:
        timeout_ms: Wall-clock budget per evaluation. Defaults to
            ``CONDUIT_EXPRESSION_TIMEOUT_MS``.
        max_steps: Interpreter step budget per evaluation. Defaults to
            ``CONDUIT_EXPRESSION_MAX_STEPS``.
        max_size: Longest string or array an expression may build. Defaults
            to ``CONDUIT_EXPRESSION_MAX_SIZE``.
    """

    def __init__(
        self,
        timeout_ms: Optional[int] = None,
        max_steps: Optional[int] = None,
        max_size: Optional[int] = None,
    ):
        self.timeout_ms = timeout_ms if timeout_ms is not None else config.expression_timeout_ms
        self.max_steps = max_steps if max_steps is not None else config.expression_max_steps
        self.max_size = max_size if max_size is not None else config.expression_max_size

    def call_function(self, source: str, args: list[Any]) -> Any:
        """Invoke the arrow function in *source* with *args*.

        Returns plain Python data. A top-level ``undefined`` result comes back
        as the ``UNDEFINED`` sentinel so callers can tell it apart from null.

        Raises:
            ExpressionSyntaxError: *source* does not parse, or is not an arrow function.
            ResolutionError: the body read a property of undefined/null or an unknown name.
            SandboxTimeoutError: the step, time or size budget ran out.
            ExpressionError: any other runtime failure inside the expression.
        """
        source = source.strip()
        node = compile_expression(source)
        if not isinstance(node, n.Arrow):
            raise ExpressionSyntaxError(
                "Expression must be a function expression such as "
                "'(sourceData) => sourceData.value'",
                expression=source,
            )
        interp = Interpreter(source, self.timeout_ms, self.max_steps, self.max_size)
        closure = Closure(node, interp.globals)
        try:
            result = interp.call(closure, [from_python(a) for a in args])
        except ExpressionError:
            raise
        except RecursionError as exc:
            raise SandboxTimeoutError(
                "Expression nesting is too deep to evaluate",
                expression=source,
                timeout_seconds=self.timeout_ms / 1000.0,
            ) from exc
        except MemoryError as exc:
            raise SandboxTimeoutError(
                "Expression ran out of memory",
                expression=source,
                timeout_seconds=self.timeout_ms / 1000.0,
            ) from exc
        except (ArithmeticError, ValueError, TypeError, IndexError, KeyError) as exc:
            logger.debug("[Sandbox] evaluation failed: %s", exc)
            raise ExpressionError(f"Evaluation failed: {exc}", expression=source) from exc
        logger.debug("[Sandbox] evaluated in %d steps", interp.steps)
        return to_python(result)

    def evaluate(self, source: str, context: Any) -> Any:
        """Single-parameter form: the whole context is the only argument."""
        return self.call_function(source, [context])


def undefined_to_none(value: Any) -> Any:
    return None if value is UNDEFINED else value
