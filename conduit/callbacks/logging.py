"""Structured JSON logging callback for run lifecycle events."""

import json
import logging
from datetime import datetime
from typing import Any

from conduit.callbacks.base import BaseCallback

logger = logging.getLogger("conduit.audit")


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _short(value: Any) -> Any:
    return value if isinstance(value, (int, float, bool)) or value is None else str(value)[:200]


class LoggingCallback(BaseCallback):
    """Emits structured JSON log lines for every lifecycle event.

    Each log line is a self-contained JSON object with:
      - event: event type name
      - ts: ISO-8601 UTC timestamp
      - relevant fields depending on event

    Log level: INFO for normal events, WARNING for failures.
    Logger name: conduit.audit (configure in your logging setup)

        engine = ToolEngine(callbacks=[LoggingCallback()])
    """

    async def on_run_start(self, run_id: str, tool_id: str, **kwargs: Any) -> None:
        logger.info(json.dumps({
            "event": "run_start",
            "ts": _now(),
            "run_id": run_id,
            "tool_id": tool_id,
            "step_count": kwargs.get("steps", 0),
        }))

    async def on_step_start(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        logger.info(json.dumps({
            "event": "step_start",
            "ts": _now(),
            "run_id": run_id,
            "step_id": step_id,
            "type": kwargs.get("type", ""),
        }))

    async def on_step_complete(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        logger.info(json.dumps({
            "event": "step_complete",
            "ts": _now(),
            "run_id": run_id,
            "step_id": step_id,
            "mode": kwargs.get("mode", ""),
            "items": kwargs.get("items", 0),
            "failed_items": kwargs.get("failed_items", 0),
        }))

    async def on_step_failed(self, run_id: str, step_id: str, error: str, **kwargs: Any) -> None:
        logger.warning(json.dumps({
            "event": "step_failed",
            "ts": _now(),
            "run_id": run_id,
            "step_id": step_id,
            "error_type": kwargs.get("error_type", ""),
            "error": _short(error),
        }))

    async def on_run_complete(self, run_id: str, tool_id: str, status: str, **kwargs: Any) -> None:
        entry = {"event": "run_complete", "ts": _now(), "run_id": run_id, "tool_id": tool_id, "status": status}
        entry.update({k: _short(v) for k, v in kwargs.items()})
        if status == "completed":
            logger.info(json.dumps(entry))
        else:
            logger.warning(json.dumps(entry))
