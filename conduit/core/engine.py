"""Step pipeline orchestrator. Runs a tool's steps in order and assembles the output.

Per step: build the variable context, let the data selector decide single vs
loop, resolve the request (or transform) per item, call the connector
(paginating when configured), and store the enveloped outcome for the
steps that follow. After the last step the output transform and response
filters produce the run's data.
"""

import asyncio
import contextvars
import inspect
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Optional, Union

from conduit.config import ConduitConfig
from conduit.connectors import ConnectorRegistry, default_registry
from conduit.core.cancellation import CancellationRegistry, CancellationToken
from conduit.core.context import VariableContextBuilder
from conduit.core.filters import apply_response_filters
from conduit.core.pagination import Paginator
from conduit.core.resolver import ExpressionResolver, stringify
from conduit.core.selector import DataSelectorExecutor, unwrap_placeholder
from conduit.core.webhooks import chain_target, notify_webhook
from conduit.credentials import SystemCredentialStore, redact, sanitize_params
from conduit.credentials.store import namespace_credentials
from conduit.exceptions import Aborted, ConduitError, ConnectorError, ExpressionError
from conduit.expressions import ExpressionSandbox, undefined_to_none
from conduit.types import (
    ConnectorResult, FailureBehavior, LoopResult, PaginationConfig, RequestStepConfig,
    RunOptions, RunResult, RunStatus, SingleResult, Step, StepResult, Tool,
    TransformStepConfig,
)

logger = logging.getLogger(__name__)

# Per-request callbacks override instance callbacks, async-safe via ContextVar
_request_callbacks: contextvars.ContextVar = contextvars.ContextVar("_conduit_callbacks", default=None)


class _RunState:
    """Everything scoped to one run. Never shared between runs."""

    def __init__(self, run_id: str, tool: Tool, contexts: VariableContextBuilder, token: CancellationToken,
                 secrets: list, concurrency: int, max_pages: int):
        self.run_id = run_id
        self.tool = tool
        self.contexts = contexts
        self.token = token
        self.secrets = secrets
        self.concurrency = concurrency
        self.max_pages = max_pages
        self.outcomes: dict[str, Union[SingleResult, LoopResult]] = {}
        self.step_results: list[StepResult] = []

    def redact(self, text: str) -> str:
        return redact(text, self.secrets)


class ToolEngine:
    """Executes tools. One engine can serve many concurrent runs.

    Constructor dependencies (all optional):
        - connectors: ConnectorRegistry, defaults to the bundled HTTP connector
        - credential_store: SystemCredentialStore consulted for each step's system id
        - cancellations: CancellationRegistry, shared so runs can be cancelled by id
        - callbacks: lifecycle callbacks ``cb(event, data)``, sync or async
        - sandbox: ExpressionSandbox used for every expression
        - config: ConduitConfig
        - on_tool_chain: ``fn(tool_id, payload, options)``, sync or async, started
          when a run finishes with a ``tool:<id>`` webhook URL
    """

    def __init__(
        self,
        connectors: Optional[ConnectorRegistry] = None,
        credential_store: Optional[SystemCredentialStore] = None,
        cancellations: Optional[CancellationRegistry] = None,
        callbacks: list = None,
        sandbox: Optional[ExpressionSandbox] = None,
        config: ConduitConfig = None,
        on_tool_chain: Optional[Callable[[str, Any, RunOptions], Optional[Awaitable[Any]]]] = None,
    ):
        self.config = config or ConduitConfig()
        self.connectors = connectors or default_registry()
        self.credential_store = credential_store
        self.cancellations = cancellations or CancellationRegistry()
        self.callbacks = callbacks or []
        self.sandbox = sandbox or ExpressionSandbox(
            timeout_ms=self.config.expression_timeout_ms,
            max_steps=self.config.expression_max_steps,
            max_size=self.config.expression_max_size,
        )
        self.resolver = ExpressionResolver(self.sandbox)
        self.on_tool_chain = on_tool_chain
        self._notifications: set[asyncio.Task] = set()

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """Signal a running tool. Returns False when *run_id* is not running."""
        return self.cancellations.cancel(run_id, reason)

    async def run_tool(
        self,
        tool: Union[Tool, dict],
        payload: Optional[dict[str, Any]] = None,
        options: Optional[RunOptions] = None,
        callbacks: list = None,
    ) -> RunResult:
        """Execute *tool* against *payload*.

        Never raises for step, expression, connector or cancellation
        failures: those are reported on the returned RunResult together
        with the results of every step that completed.

        Args:
            tool: A Tool or a tool document (camelCase, legacy keys accepted).
            payload: Input fields, visible at the root of every context.
            options: Run id, timeout, concurrency, credential overrides and the
                webhook URL notified once the run ends.
            callbacks: Per-call callbacks replacing the engine's for this run.
        """
        _tok = _request_callbacks.set(callbacks) if callbacks is not None else None
        try:
            tool = tool if isinstance(tool, Tool) else Tool.model_validate(tool)
            options = options or RunOptions()
            result = await self._run(tool, payload or {}, options)
            if options.webhook_url:
                self._dispatch_webhook(tool, result, options)
            return result
        finally:
            if _tok is not None:
                _request_callbacks.reset(_tok)

    async def _run(self, tool: Tool, payload: dict[str, Any], options: RunOptions) -> RunResult:
        started_at = datetime.utcnow()
        run_id = options.run_id
        token = self.cancellations.register(run_id)
        timeout = options.timeout_seconds if options.timeout_seconds is not None \
            else self.config.default_run_timeout_seconds
        timer = None
        if timeout:
            timer = asyncio.get_running_loop().call_later(timeout, token.cancel, f"timeout after {timeout}s")

        credentials = self._credentials_for(tool, options)
        run = _RunState(
            run_id=run_id,
            tool=tool,
            contexts=VariableContextBuilder(payload, credentials),
            token=token,
            secrets=list(credentials.values()),
            concurrency=options.loop_concurrency or self.config.loop_concurrency,
            max_pages=options.max_pagination_pages or self.config.max_pagination_pages,
        )
        logger.info(f"[Engine] run {run_id} tool={tool.id!r} steps={len(tool.steps)}")
        await self._fire_callbacks("run_started", {
            "run_id": run_id, "tool_id": tool.id, "steps": len(tool.steps),
        })

        try:
            for step in tool.steps:
                token.raise_if_cancelled()
                result = await self._execute_step(step, run)
                run.step_results.append(result)
                if result.outcome is not None:
                    run.outcomes[step.id] = result.outcome
                if result.success:
                    continue
                if step.failure_behavior == FailureBehavior.CONTINUE:
                    logger.info(f"[Engine] step '{step.id}' failed, continuing: {result.error}")
                    continue
                return await self._finish_failed(run, started_at, result.error, failed_step_id=step.id)

            token.raise_if_cancelled()
            try:
                data = self._build_output(run)
            except ConduitError as exc:
                return await self._finish_failed(run, started_at, f"Output transform failed: {run.redact(str(exc))}")

        except Aborted as exc:
            reason = exc.reason or token.reason or "cancelled"
            logger.warning(f"[Engine] run {run_id} aborted: {reason}")
            await self._fire_callbacks("run_aborted", {
                "run_id": run_id, "tool_id": tool.id, "reason": reason,
                "completed_steps": len(run.step_results),
            })
            return RunResult(
                run_id=run_id,
                tool_id=tool.id,
                status=RunStatus.ABORTED,
                success=False,
                error=run.redact(str(exc)),
                step_results=run.step_results,
                started_at=started_at,
                completed_at=datetime.utcnow(),
            )
        finally:
            if timer is not None:
                timer.cancel()
            self.cancellations.release(run_id)

        logger.info(f"[Engine] run {run_id} completed")
        await self._fire_callbacks("run_completed", {
            "run_id": run_id, "tool_id": tool.id, "steps": len(run.step_results),
        })
        return RunResult(
            run_id=run_id,
            tool_id=tool.id,
            status=RunStatus.COMPLETED,
            success=True,
            data=data,
            step_results=run.step_results,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )

    async def _finish_failed(self, run: _RunState, started_at: datetime, error: str,
                             failed_step_id: Optional[str] = None) -> RunResult:
        logger.warning(f"[Engine] run {run.run_id} failed at {failed_step_id or 'output'}: {error}")
        await self._fire_callbacks("run_failed", {
            "run_id": run.run_id, "tool_id": run.tool.id, "step_id": failed_step_id, "error": error,
        })
        return RunResult(
            run_id=run.run_id,
            tool_id=run.tool.id,
            status=RunStatus.FAILED,
            success=False,
            error=error,
            failed_step_id=failed_step_id,
            step_results=run.step_results,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )

    # ── Steps ────────────────────────────────────────────────────────────────

    async def _execute_step(self, step: Step, run: _RunState) -> StepResult:
        """Run one step. Step-fatal errors come back as a failed StepResult;
        only Aborted propagates."""
        started_at = datetime.utcnow()
        await self._fire_callbacks("step_started", {
            "run_id": run.run_id, "step_id": step.id, "type": step.config.type,
        })
        base = run.contexts.build(run.outcomes)
        executor = DataSelectorExecutor(self.resolver, run.contexts, concurrency=run.concurrency)

        if isinstance(step.config, TransformStepConfig):
            async def invoke(ctx: dict[str, Any]) -> Any:
                return self._run_transform(step.config, ctx)
        else:
            async def invoke(ctx: dict[str, Any]) -> Any:
                return await self._run_request(step.config, ctx, run)

        try:
            outcome = await executor.execute(step, base, invoke, checkpoint=run.token.raise_if_cancelled)
        except Aborted:
            raise
        except ConduitError as exc:
            error = f"Step '{step.id}' failed: {run.redact(str(exc))}"
            await self._fire_callbacks("step_failed", {
                "run_id": run.run_id, "step_id": step.id, "error": error,
                "error_type": type(exc).__name__,
            })
            return StepResult(step_id=step.id, success=False, error=error,
                              started_at=started_at, completed_at=datetime.utcnow())

        if isinstance(outcome, SingleResult) and not outcome.envelope.success:
            error = f"Step '{step.id}' failed: {outcome.envelope.error}"
            await self._fire_callbacks("step_failed", {
                "run_id": run.run_id, "step_id": step.id, "error": error, "error_type": "ConnectorError",
            })
            return StepResult(step_id=step.id, success=False, outcome=outcome, error=error,
                              started_at=started_at, completed_at=datetime.utcnow())

        failures = len(outcome.failures)
        await self._fire_callbacks("step_completed", {
            "run_id": run.run_id, "step_id": step.id, "mode": outcome.kind,
            "items": len(outcome.envelopes), "failed_items": failures,
        })
        return StepResult(step_id=step.id, success=True, outcome=outcome,
                          started_at=started_at, completed_at=datetime.utcnow())

    def _run_transform(self, config: TransformStepConfig, context: dict[str, Any]) -> Any:
        value = self.resolver.resolve_expression(unwrap_placeholder(config.transform_code), context)
        return undefined_to_none(value)

    async def _run_request(self, config: RequestStepConfig, context: dict[str, Any], run: _RunState) -> Any:
        try:
            if config.pagination is not None:
                paginator = Paginator(
                    config.pagination,
                    self._page_size(config.pagination, context),
                    self.sandbox,
                    run.max_pages,
                )

                async def fetch(page_vars: dict[str, Any]) -> ConnectorResult:
                    page_context = run.contexts.with_pagination(context, page_vars)
                    return await self._call_connector(config, page_context, run)

                return await paginator.run(fetch, checkpoint=run.token.raise_if_cancelled)

            result = await self._call_connector(config, context, run)
            if not result.success:
                raise ConnectorError(result.error or "Connector call failed", status_code=result.status_code)
            return result.data
        except ConnectorError as exc:
            raise ConnectorError(
                run.redact(str(exc)), protocol=exc.protocol, status_code=exc.status_code, details=exc.details,
            ) from exc

    async def _call_connector(self, config: RequestStepConfig, context: dict[str, Any],
                              run: _RunState) -> ConnectorResult:
        inputs = self.resolver.resolve_request(config, context)
        run.token.raise_if_cancelled()
        logger.debug(
            f"[Engine] {inputs['method']} {run.redact(inputs['url'])} "
            f"headers={sanitize_params(inputs['headers'])}"
        )
        return await run.token.race(self.connectors.execute(config, inputs))

    def _page_size(self, pagination: PaginationConfig, context: dict[str, Any]) -> int:
        raw = pagination.page_size
        if isinstance(raw, str):
            raw = self.resolver.resolve_string(raw, context) if raw.strip() else self.config.default_page_size
        try:
            size = int(stringify(raw))
        except ValueError:
            raise ExpressionError(f"pageSize must resolve to a positive integer, got {stringify(raw)!r}") from None
        if size < 1:
            raise ExpressionError(f"pageSize must resolve to a positive integer, got {size}")
        return size

    # ── Output ───────────────────────────────────────────────────────────────

    def _build_output(self, run: _RunState) -> Any:
        context = run.contexts.build(run.outcomes)
        transform = (run.tool.output_transform or "").strip()
        if transform:
            output = undefined_to_none(self.resolver.resolve_expression(unwrap_placeholder(transform), context))
        else:
            output = run.contexts.without_credentials(context)
        if run.tool.response_filters:
            output = apply_response_filters(output, run.tool.response_filters)
        return output

    def _credentials_for(self, tool: Tool, options: RunOptions) -> dict[str, Any]:
        """Namespaced credentials: the store first, then per-run overrides."""
        system_ids = sorted({
            step.config.system_id for step in tool.steps
            if isinstance(step.config, RequestStepConfig) and step.config.system_id
        })
        flat: dict[str, Any] = {}
        if self.credential_store is not None:
            flat.update(self.credential_store.namespaced(system_ids))
        for system_id, values in options.credentials.items():
            flat.update(namespace_credentials(system_id, values))
        return flat

    # ── post-run notifications ──

    def _dispatch_webhook(self, tool: Tool, result: RunResult, options: RunOptions) -> None:
        url = options.webhook_url
        if url.startswith(("http://", "https://")):
            self._track(notify_webhook(url, result, self.config.webhook_timeout_seconds))
            return
        target = chain_target(url)
        if target is None:
            logger.warning(f"[Engine] Ignoring unsupported webhook URL '{url}' for run {result.run_id}")
        elif target == tool.id:
            logger.warning(f"[Engine] Tool '{tool.id}' cannot trigger itself")
        elif self.on_tool_chain is None:
            logger.warning(f"[Engine] Tool chain webhook (tool:{target}) has no chain handler")
        else:
            chained = options.model_copy(update={"run_id": str(uuid.uuid4()), "webhook_url": None})
            self._track(self._chain(target, result, chained))

    async def _chain(self, tool_id: str, result: RunResult, options: RunOptions) -> None:
        logger.info(f"[Engine] Run {result.run_id} chaining to tool '{tool_id}' as run {options.run_id}")
        try:
            outcome = self.on_tool_chain(tool_id, result.data, options)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning(f"[Engine] Tool chain to '{tool_id}' failed: {exc}")

    def _track(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def wait_for_notifications(self) -> None:
        """Block until every pending webhook delivery and tool chain has finished."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    async def _fire_callbacks(self, event: str, data: dict) -> None:
        """Invoke all registered callbacks for a lifecycle event."""
        cbs = _request_callbacks.get()
        if cbs is None:
            cbs = self.callbacks
        if not cbs:
            return
        for cb in cbs:
            try:
                if asyncio.iscoroutinefunction(cb) or asyncio.iscoroutinefunction(getattr(cb, "__call__", None)):
                    await cb(event, data)
                else:
                    cb(event, data)
            except Exception as cb_exc:
                logger.warning(f"[Engine] Callback error on '{event}': {cb_exc}")
