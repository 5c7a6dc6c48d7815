"""Data selector execution: decides single vs loop and builds result envelopes."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from conduit.core.context import VariableContextBuilder
from conduit.core.resolver import ExpressionResolver
from conduit.exceptions import Aborted, ConduitError, ExpressionError, SelectorTypeError
from conduit.expressions import UNDEFINED, to_string
from conduit.types import LoopResult, ResultEnvelope, SingleResult, Step

logger = logging.getLogger(__name__)

SINGLE = "single"
LOOP = "loop"

# One invocation of the step for one currentItem. Returns the data to
# envelope; raises ConnectorError for an element-level failure.
Invocation = Callable[[dict[str, Any]], Awaitable[Any]]


def unwrap_placeholder(expression: str) -> str:
    """Selectors may be written with or without the ``<<...>>`` wrapper."""
    text = expression.strip()
    if text.startswith("<<") and text.endswith(">>"):
        return text[2:-2].strip()
    return text


class DataSelectorExecutor:
    """Runs a step once or once per selected element.

    Per-element failures (ConnectorError, or any other ConduitError that is
    not an expression error) are captured in that element's envelope.
    Expression errors and cancellation are step-fatal and propagate.

    Args:
        resolver: Evaluates the selector expression.
        contexts: Builds the per-element context views.
        concurrency: Max in-flight invocations for loop steps. Output order
            always matches input order.
    """

    def __init__(self, resolver: ExpressionResolver, contexts: VariableContextBuilder, concurrency: int = 5):
        self.resolver = resolver
        self.contexts = contexts
        self.concurrency = max(1, concurrency)

    def select(self, step: Step, context: Mapping[str, Any]) -> tuple[str, Any]:
        """Evaluate the step's selector and classify the result.

        Returns:
            ``("single", item)`` or ``("loop", items)``.

        Raises:
            SelectorTypeError: selector returned neither an object nor an array.
        """
        if not step.data_selector or not step.data_selector.strip():
            return SINGLE, {}
        value = self.resolver.resolve_expression(unwrap_placeholder(step.data_selector), context)
        if isinstance(value, dict):
            return SINGLE, value
        if isinstance(value, list):
            return LOOP, value
        actual = "undefined" if value is UNDEFINED else ("null" if value is None else type(value).__name__)
        raise SelectorTypeError(
            f"Data selector for step '{step.id}' must return an object or an array, got {actual}"
            + ("" if value is UNDEFINED or value is None else f" ({to_string(value)[:100]})"),
            step_id=step.id,
            actual_type=actual,
            details={"step_id": step.id, "actual_type": actual},
        )

    async def execute(
        self,
        step: Step,
        context: Mapping[str, Any],
        invoke: Invocation,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> Union[SingleResult, LoopResult]:
        """Drive *invoke* according to the selector and return the enveloped outcome."""
        mode, selected = self.select(step, context)
        if mode == SINGLE:
            if checkpoint:
                checkpoint()
            envelope = await self._run_one(self.contexts.with_item(context, selected), selected, invoke)
            return SingleResult(envelope=envelope)

        logger.info("[Selector] step '%s' looping over %d items", step.id, len(selected))
        if not selected:
            return LoopResult(items=[])

        semaphore = asyncio.Semaphore(self.concurrency)
        envelopes: list[Optional[ResultEnvelope]] = [None] * len(selected)

        async def _run_index(index: int, item: Any) -> None:
            async with semaphore:
                if checkpoint:
                    checkpoint()
                item_context = self.contexts.with_item(context, item)
                envelopes[index] = await self._run_one(item_context, item, invoke)

        tasks = [asyncio.create_task(_run_index(i, item)) for i, item in enumerate(selected)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return LoopResult(items=[e for e in envelopes if e is not None])

    async def _run_one(self, item_context: dict[str, Any], item: Any, invoke: Invocation) -> ResultEnvelope:
        try:
            data = await invoke(item_context)
        except (ExpressionError, Aborted):
            raise
        except ConduitError as exc:
            logger.warning("[Selector] invocation failed: %s", exc)
            return ResultEnvelope(current_item=item, data=None, success=False, error=str(exc))
        return ResultEnvelope(current_item=item, data=data, success=True)
