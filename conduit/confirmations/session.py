"""Confirmation state machine for confirmable tool calls.

    pending -> running -> completed
                       -> awaiting_confirmation -> completed | declined
                       -> error

``completed``, ``declined`` and ``error`` are terminal. A call whose action
failed (raised, or returned ``success: False``) never waits for
confirmation. Each record is resolved by exactly one confirmation action.
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from conduit.confirmations.handlers import ConfirmationHandler, Resolution, is_success
from conduit.confirmations.policies import get_effective_mode
from conduit.exceptions import ConfirmationStateError
from conduit.types import (
    ConfirmationAction, ConfirmationRecord, ConfirmationStatus, ExecutionMode, Tool,
)

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ConfirmationStatus, frozenset] = {
    ConfirmationStatus.PENDING: frozenset({ConfirmationStatus.RUNNING, ConfirmationStatus.ERROR}),
    ConfirmationStatus.RUNNING: frozenset({
        ConfirmationStatus.COMPLETED,
        ConfirmationStatus.AWAITING_CONFIRMATION,
        ConfirmationStatus.ERROR,
    }),
    ConfirmationStatus.AWAITING_CONFIRMATION: frozenset({
        ConfirmationStatus.COMPLETED,
        ConfirmationStatus.DECLINED,
        ConfirmationStatus.ERROR,     # confirmed action raised
    }),
    ConfirmationStatus.COMPLETED: frozenset(),
    ConfirmationStatus.DECLINED: frozenset(),
    ConfirmationStatus.ERROR: frozenset(),
}


class ConfirmationSession:
    """Owns the confirmation records and tool drafts of one agent session.

    Nothing here is process-global: create one session per conversation and
    pass it to whatever resolves its calls.

    Args:
        handlers: Confirmable tool types, keyed by ``handler.name``.
        user_policies: Per-tool-type user settings, e.g.
            ``{"call_system": {"autoExecute": "run_everything"}}``.
    """

    def __init__(
        self,
        handlers: Iterable[ConfirmationHandler] = (),
        user_policies: Optional[dict[str, dict[str, Any]]] = None,
    ):
        self.handlers: dict[str, ConfirmationHandler] = {h.name: h for h in handlers}
        self.user_policies = user_policies or {}
        self._records: dict[str, ConfirmationRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._drafts: dict[str, dict[str, Any]] = {}

    # ── Drafts ───────────────────────────────────────────────────────────────

    def put_draft(self, tool: Union[Tool, dict[str, Any]], draft_id: Optional[str] = None) -> str:
        """Store a tool document under *draft_id* (generated when omitted)."""
        document = tool.to_document() if isinstance(tool, Tool) else copy.deepcopy(tool)
        draft_id = draft_id or f"draft_{uuid.uuid4().hex[:12]}"
        self._drafts[draft_id] = document
        return draft_id

    def get_draft(self, draft_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Copy of the draft, or None."""
        draft = self._drafts.get(draft_id) if draft_id else None
        return copy.deepcopy(draft) if draft is not None else None

    def drop_draft(self, draft_id: str) -> bool:
        return self._drafts.pop(draft_id, None) is not None

    # ── Records ──────────────────────────────────────────────────────────────

    def get(self, call_id: str) -> ConfirmationRecord:
        """Snapshot of the record for *call_id*.

        Raises:
            ConfirmationStateError: unknown call id.
        """
        record = self._records.get(call_id)
        if record is None:
            raise ConfirmationStateError(f"Unknown tool call '{call_id}'", call_id=call_id)
        return record.model_copy(deep=True)

    def pending(self) -> list[ConfirmationRecord]:
        """Calls currently awaiting confirmation."""
        return [
            r.model_copy(deep=True) for r in self._records.values()
            if r.status == ConfirmationStatus.AWAITING_CONFIRMATION
        ]

    def discard(self, call_id: str) -> bool:
        """Forget a resolved call and its lock. Returns False for unknown ids.

        Raises:
            ConfirmationStateError: the call has not reached a terminal status.
        """
        record = self._records.get(call_id)
        if record is None:
            return False
        if _TRANSITIONS[record.status]:
            raise ConfirmationStateError(
                f"Tool call '{call_id}' is still '{record.status.value}'",
                call_id=call_id,
                status=record.status.value,
            )
        del self._records[call_id]
        self._locks.pop(call_id, None)
        return True

    def discard_resolved(self) -> int:
        """Forget every call in a terminal status. Returns how many were dropped."""
        resolved = [cid for cid, r in self._records.items() if not _TRANSITIONS[r.status]]
        for call_id in resolved:
            self.discard(call_id)
        return len(resolved)

    def close(self) -> None:
        """End of the conversation: drop every record, lock and draft."""
        if self._records or self._drafts:
            logger.debug(
                f"[Confirmations] closing session with {len(self._records)} call(s), {len(self._drafts)} draft(s)"
            )
        self._records.clear()
        self._locks.clear()
        self._drafts.clear()

    def _handler(self, tool_name: str) -> ConfirmationHandler:
        handler = self.handlers.get(tool_name)
        if handler is None:
            raise ConfirmationStateError(f"No handler registered for tool '{tool_name}'")
        return handler

    def _transition(self, record: ConfirmationRecord, status: ConfirmationStatus) -> None:
        if status not in _TRANSITIONS[record.status]:
            raise ConfirmationStateError(
                f"Tool call '{record.call_id}' cannot move from '{record.status.value}' to '{status.value}'",
                call_id=record.call_id,
                status=record.status.value,
            )
        logger.debug(f"[Confirmations] {record.call_id}: {record.status.value} -> {status.value}")
        record.status = status
        record.history.append(status)
        record.updated_at = datetime.utcnow()

    async def start_call(
        self,
        tool_name: str,
        call_input: Optional[dict[str, Any]] = None,
        call_id: Optional[str] = None,
    ) -> ConfirmationRecord:
        """Register a call and drive it as far as its execution mode allows.

        Returns the record after the call completes, fails, or starts
        waiting for confirmation.
        """
        handler = self._handler(tool_name)
        call_input = dict(call_input or {})
        record = ConfirmationRecord(tool_name=tool_name, input=call_input)
        if call_id:
            if call_id in self._records:
                raise ConfirmationStateError(f"Tool call '{call_id}' already exists", call_id=call_id)
            record.call_id = call_id
        record.history.append(ConfirmationStatus.PENDING)
        self._records[record.call_id] = record
        lock = self._locks.setdefault(record.call_id, asyncio.Lock())

        async with lock:
            record.execution_mode = get_effective_mode(
                handler.policy, call_input, self.user_policies.get(tool_name)
            )
            self._transition(record, ConfirmationStatus.RUNNING)

            if record.execution_mode == ExecutionMode.CONFIRM_BEFORE_EXECUTION:
                if handler.policy.build_pending_output is not None:
                    record.output = handler.policy.build_pending_output(call_input)
                self._transition(record, ConfirmationStatus.AWAITING_CONFIRMATION)
                return record.model_copy(deep=True)

            try:
                output = await handler.execute(call_input, self)
            except Exception as exc:
                logger.warning(f"[Confirmations] {tool_name} call {record.call_id} raised: {exc}")
                record.error = str(exc)
                self._transition(record, ConfirmationStatus.ERROR)
                return record.model_copy(deep=True)

            record.output = output
            if not is_success(output):
                record.error = output.get("error")
                self._transition(record, ConfirmationStatus.COMPLETED)
            elif record.execution_mode == ExecutionMode.CONFIRM_AFTER_EXECUTION:
                self._transition(record, ConfirmationStatus.AWAITING_CONFIRMATION)
            else:
                await handler.commit(output, self)
                self._transition(record, ConfirmationStatus.COMPLETED)
            return record.model_copy(deep=True)

    async def resolve_confirmation(
        self,
        call_id: str,
        action: Union[ConfirmationAction, str],
        approved_diffs: Optional[list] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> ConfirmationRecord:
        """Apply the single confirmation action that ends ``awaiting_confirmation``.

        Args:
            call_id: The tool call.
            action: ``confirmed``, ``declined``, ``partial`` or an OAuth action.
            approved_diffs: For ``partial``: the approved subset of the proposed
                diffs (diff dicts or indices).
            payload: Action data, e.g. OAuth tokens.

        Raises:
            ConfirmationStateError: unknown call, call not awaiting confirmation,
                or an action this tool type does not accept.
        """
        record = self._records.get(call_id)
        if record is None:
            raise ConfirmationStateError(f"Unknown tool call '{call_id}'", call_id=call_id)
        try:
            action = ConfirmationAction(action)
        except ValueError:
            raise ConfirmationStateError(f"Unknown confirmation action '{action}'", call_id=call_id) from None
        handler = self._handler(record.tool_name)

        async with self._locks[call_id]:
            if record.status != ConfirmationStatus.AWAITING_CONFIRMATION:
                raise ConfirmationStateError(
                    f"Tool call '{call_id}' is '{record.status.value}', not awaiting confirmation",
                    call_id=call_id,
                    status=record.status.value,
                )
            if action not in handler.valid_actions:
                raise ConfirmationStateError(
                    f"Action '{action.value}' is not valid for '{record.tool_name}'. "
                    f"Valid actions: {', '.join(a.value for a in handler.valid_actions)}",
                    call_id=call_id,
                    status=record.status.value,
                )
            if action == ConfirmationAction.PARTIAL and not approved_diffs:
                raise ConfirmationStateError(
                    "A partial confirmation needs at least one approved diff; use 'declined' to reject all",
                    call_id=call_id,
                    status=record.status.value,
                )

            try:
                resolution: Resolution = await handler.process_confirmation(
                    record, action, self, approved_diffs=approved_diffs, payload=payload,
                )
            except ConfirmationStateError:
                raise
            except Exception as exc:
                logger.warning(f"[Confirmations] resolving {call_id} with '{action.value}' raised: {exc}")
                record.error = str(exc)
                self._transition(record, ConfirmationStatus.ERROR)
                return record.model_copy(deep=True)

            record.output = resolution.output
            record.message = resolution.message
            record.applied_diffs = resolution.applied_diffs
            record.rejected_diffs = resolution.rejected_diffs
            if not is_success(resolution.output) and isinstance(resolution.output, dict):
                record.error = resolution.output.get("error")
            self._transition(record, resolution.status)
            logger.info(f"[Confirmations] {record.tool_name} call {call_id} resolved '{action.value}'")
            return record.model_copy(deep=True)
