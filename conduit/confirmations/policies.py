"""Execution-mode policies per tool type."""

from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from conduit.types import ExecutionMode

# call_system auto-execute preferences
ASK_EVERY_TIME = "ask_every_time"
RUN_GETS_ONLY = "run_gets_only"
RUN_EVERYTHING = "run_everything"


class ToolPolicy(BaseModel):
    """How a tool type decides whether a call needs confirmation.

    ``compute_mode_from_input`` receives the call input and the user's
    policy settings for this tool type and may return None to fall back to
    the user's chosen mode or ``default_mode``.
    """
    default_mode: ExecutionMode = ExecutionMode.AUTO
    user_mode_options: list[ExecutionMode] = Field(default_factory=list)
    compute_mode_from_input: Optional[Callable[[dict[str, Any], dict[str, Any]], Optional[ExecutionMode]]] = None
    build_pending_output: Optional[Callable[[dict[str, Any]], Any]] = None


def get_effective_mode(
    policy: ToolPolicy,
    call_input: dict[str, Any],
    user_policy: Optional[dict[str, Any]] = None,
) -> ExecutionMode:
    """Computed mode, then the user's chosen mode (when the policy allows it), then the default."""
    user_policy = user_policy or {}
    if policy.compute_mode_from_input is not None:
        computed = policy.compute_mode_from_input(call_input, user_policy)
        if computed is not None:
            return ExecutionMode(computed)
    chosen = user_policy.get("mode")
    if chosen and ExecutionMode(chosen) in policy.user_mode_options:
        return ExecutionMode(chosen)
    return policy.default_mode


def call_system_mode(call_input: dict[str, Any], user_policy: dict[str, Any]) -> ExecutionMode:
    """GETs run without asking unless the user asked to confirm everything."""
    auto_execute = user_policy.get("autoExecute", RUN_GETS_ONLY)
    if auto_execute == RUN_EVERYTHING:
        return ExecutionMode.AUTO
    if auto_execute == RUN_GETS_ONLY and str(call_input.get("method", "GET")).upper() == "GET":
        return ExecutionMode.AUTO
    return ExecutionMode.CONFIRM_BEFORE_EXECUTION


EDIT_TOOL_POLICY = ToolPolicy(
    default_mode=ExecutionMode.CONFIRM_AFTER_EXECUTION,
    user_mode_options=[ExecutionMode.AUTO, ExecutionMode.CONFIRM_BEFORE_EXECUTION,
                       ExecutionMode.CONFIRM_AFTER_EXECUTION],
)

RUN_TOOL_POLICY = ToolPolicy(
    default_mode=ExecutionMode.AUTO,
    user_mode_options=[ExecutionMode.AUTO, ExecutionMode.CONFIRM_BEFORE_EXECUTION],
)

CALL_SYSTEM_POLICY = ToolPolicy(
    default_mode=ExecutionMode.CONFIRM_BEFORE_EXECUTION,
    compute_mode_from_input=call_system_mode,
    build_pending_output=lambda call_input: {
        "pending": True,
        "method": str(call_input.get("method", "GET")).upper(),
        "url": call_input.get("url"),
        "systemId": call_input.get("systemId"),
    },
)

AUTHENTICATE_OAUTH_POLICY = ToolPolicy(default_mode=ExecutionMode.CONFIRM_AFTER_EXECUTION)
