"""Execution core: resolver, context builder, selector, pagination and the orchestrator."""

from conduit.core.cancellation import CancellationRegistry, CancellationToken
from conduit.core.context import VariableContextBuilder
from conduit.core.engine import ToolEngine
from conduit.core.resolver import ExpressionResolver
from conduit.core.selector import DataSelectorExecutor

__all__ = [
    "CancellationRegistry",
    "CancellationToken",
    "DataSelectorExecutor",
    "ExpressionResolver",
    "ToolEngine",
    "VariableContextBuilder",
]
