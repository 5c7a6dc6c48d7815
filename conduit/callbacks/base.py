"""Base callback protocol for Conduit run lifecycle hooks.

Callbacks are called at key points of a tool run. Implement this protocol
to observe or instrument runs without modifying the engine.

Usage:
    class MyCallback(BaseCallback):
        async def on_step_failed(self, run_id, step_id, error, **kw):
            print(f"{step_id} failed: {error}")

    engine = ToolEngine(callbacks=[MyCallback()])
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ConduitCallback(Protocol):
    """Protocol defining hooks for run lifecycle events.

    The engine calls ``cb(event, data)``; :class:`BaseCallback` dispatches
    that to the named methods below.
    """

    async def on_run_start(self, run_id: str, tool_id: str, **kwargs: Any) -> None:
        ...

    async def on_step_start(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        ...

    async def on_step_complete(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        ...

    async def on_step_failed(self, run_id: str, step_id: str, error: str, **kwargs: Any) -> None:
        ...

    async def on_run_complete(self, run_id: str, tool_id: str, status: str, **kwargs: Any) -> None:
        """Called once per run with status completed, failed or aborted."""
        ...


class BaseCallback:
    """Concrete base with no-op hooks and the ``(event, data)`` dispatcher.

    Subclass this instead of implementing the Protocol directly to avoid
    implementing every method.
    """

    async def __call__(self, event: str, data: dict) -> None:
        data = dict(data)
        run_id = data.pop("run_id", "")
        if event == "run_started":
            await self.on_run_start(run_id, data.pop("tool_id", ""), **data)
        elif event == "step_started":
            await self.on_step_start(run_id, data.pop("step_id", ""), **data)
        elif event == "step_completed":
            await self.on_step_complete(run_id, data.pop("step_id", ""), **data)
        elif event == "step_failed":
            await self.on_step_failed(run_id, data.pop("step_id", ""), data.pop("error", ""), **data)
        elif event in ("run_completed", "run_failed", "run_aborted"):
            status = event[len("run_"):]
            await self.on_run_complete(run_id, data.pop("tool_id", ""), status, **data)

    async def on_run_start(self, run_id: str, tool_id: str, **kwargs: Any) -> None:
        pass

    async def on_step_start(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        pass

    async def on_step_complete(self, run_id: str, step_id: str, **kwargs: Any) -> None:
        pass

    async def on_step_failed(self, run_id: str, step_id: str, error: str, **kwargs: Any) -> None:
        pass

    async def on_run_complete(self, run_id: str, tool_id: str, status: str, **kwargs: Any) -> None:
        pass
