"""Conduit: declarative multi-step tool execution.

Usage:
    from conduit import ToolEngine, apply_patches

    engine = ToolEngine()
    result = await engine.run_tool(tool_document, {"userId": 42})
"""

from conduit.types import (
    Tool, Step, RequestStepConfig, TransformStepConfig, PaginationConfig, ResponseFilter,
    ResultEnvelope, SingleResult, LoopResult, StepResult, RunOptions, RunResult, RunStatus,
    ConnectorResult, PatchOperation, PatchResult, ConfirmationRecord, ConfirmationStatus,
    ConfirmationAction, ExecutionMode, FailureBehavior,
)
from conduit.exceptions import (
    ConduitError, ExpressionError, ExpressionSyntaxError, ResolutionError, SandboxTimeoutError,
    SelectorTypeError, ConnectorError, Aborted, PatchError, PatchValidationError,
    PathUnresolvableError, PatchTestFailedError, StructuralInvalidError, ConfirmationStateError,
    CredentialError, ToolLoadError,
)
from conduit.core import ToolEngine, ExpressionResolver, CancellationRegistry
from conduit.patches import apply_patches, validate_patches
from conduit.confirmations import ConfirmationSession
from conduit.loader import load_tool
from conduit.version import __version__

__all__ = [
    "Tool", "Step", "RequestStepConfig", "TransformStepConfig", "PaginationConfig", "ResponseFilter",
    "ResultEnvelope", "SingleResult", "LoopResult", "StepResult", "RunOptions", "RunResult", "RunStatus",
    "ConnectorResult", "PatchOperation", "PatchResult", "ConfirmationRecord", "ConfirmationStatus",
    "ConfirmationAction", "ExecutionMode", "FailureBehavior",
    "ConduitError", "ExpressionError", "ExpressionSyntaxError", "ResolutionError", "SandboxTimeoutError",
    "SelectorTypeError", "ConnectorError", "Aborted", "PatchError", "PatchValidationError",
    "PathUnresolvableError", "PatchTestFailedError", "StructuralInvalidError", "ConfirmationStateError",
    "CredentialError", "ToolLoadError",
    "ToolEngine", "ExpressionResolver", "CancellationRegistry",
    "apply_patches", "validate_patches",
    "ConfirmationSession",
    "load_tool",
    "__version__",
]
