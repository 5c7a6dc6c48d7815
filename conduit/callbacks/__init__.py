"""Callback/hook system for run lifecycle events."""

from conduit.callbacks.base import BaseCallback, ConduitCallback
from conduit.callbacks.logging import LoggingCallback

__all__ = ["BaseCallback", "ConduitCallback", "LoggingCallback"]
