"""Confirmation state machine for tool calls that need a human (or model) in the loop."""

from conduit.confirmations.handlers import (
    AuthenticateOAuthHandler, CallSystemHandler, ConfirmationHandler, EditToolHandler, Resolution,
    RunToolHandler, split_diffs,
)
from conduit.confirmations.policies import ToolPolicy, get_effective_mode
from conduit.confirmations.session import ConfirmationSession

__all__ = [
    "AuthenticateOAuthHandler",
    "CallSystemHandler",
    "ConfirmationHandler",
    "ConfirmationSession",
    "EditToolHandler",
    "Resolution",
    "RunToolHandler",
    "ToolPolicy",
    "get_effective_mode",
    "split_diffs",
]
