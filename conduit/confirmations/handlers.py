"""Built-in confirmable tool-call handlers.

A handler owns one tool type: its policy, the actions it accepts while
awaiting confirmation, the underlying action, and what each confirmation
action does to the call's output.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Optional, Union
from urllib.parse import urlencode

from pydantic import BaseModel

from conduit.confirmations.policies import (
    AUTHENTICATE_OAUTH_POLICY, CALL_SYSTEM_POLICY, EDIT_TOOL_POLICY, RUN_TOOL_POLICY, ToolPolicy,
)
from conduit.credentials import SystemCredentialStore
from conduit.exceptions import ConfirmationStateError, CredentialError, CredentialNotFound, PatchError
from conduit.expressions import canonical_json
from conduit.patches import apply_patches, format_diff_summary, validate_patches
from conduit.types import (
    ConfirmationAction, ConfirmationRecord, ConfirmationStatus, ExecutionMode, RunOptions, Tool,
)

if TYPE_CHECKING:
    from conduit.confirmations.session import ConfirmationSession
    from conduit.core.engine import ToolEngine

logger = logging.getLogger(__name__)


class Resolution(BaseModel):
    """Outcome of one confirmation action, applied to the record by the session."""
    status: ConfirmationStatus
    output: Any = None
    message: Optional[str] = None
    applied_diffs: Optional[list[dict[str, Any]]] = None
    rejected_diffs: Optional[list[dict[str, Any]]] = None


class ConfirmationHandler:
    """Base handler: confirm runs (or keeps) the action's output, decline discards it."""

    name: str = ""
    policy: ToolPolicy = ToolPolicy()
    valid_actions: tuple[ConfirmationAction, ...] = (ConfirmationAction.CONFIRMED, ConfirmationAction.DECLINED)
    declined_message = "Declined by user."

    async def execute(self, call_input: dict[str, Any], session: "ConfirmationSession") -> Any:
        """Run the underlying action. ``{"success": False, ...}`` marks a failed action."""
        raise NotImplementedError

    async def commit(self, output: Any, session: "ConfirmationSession") -> None:
        """Make a successful output take effect. Called once per call."""

    async def process_confirmation(
        self,
        record: ConfirmationRecord,
        action: ConfirmationAction,
        session: "ConfirmationSession",
        approved_diffs: Optional[list] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Resolution:
        if action == ConfirmationAction.DECLINED:
            return Resolution(
                status=ConfirmationStatus.DECLINED,
                output={"success": False, "rejected": True, "message": self.declined_message},
                message=self.declined_message,
            )
        output = record.output
        if record.execution_mode == ExecutionMode.CONFIRM_BEFORE_EXECUTION:
            output = await self.execute(record.input, session)
        if is_success(output):
            await self.commit(output, session)
        return Resolution(status=ConfirmationStatus.COMPLETED, output=output, message="Confirmed by user.")


def is_success(output: Any) -> bool:
    return not (isinstance(output, dict) and output.get("success") is False)


# ── edit_tool ────────────────────────────────────────────────────────────────


def split_diffs(proposed: list[dict[str, Any]], approved: list[Union[dict[str, Any], int]]) -> tuple[list, list]:
    """Partition *proposed* into (approved, rejected), both in proposal order.

    *approved* holds diffs (matched by value, each proposal used once) or
    indices into *proposed*.

    Raises:
        ConfirmationStateError: an approved entry is not among the proposals.
    """
    used: set[int] = set()
    for entry in approved:
        if isinstance(entry, int) and not isinstance(entry, bool):
            if not 0 <= entry < len(proposed):
                raise ConfirmationStateError(f"Approved diff index {entry} is out of range")
            used.add(entry)
            continue
        wanted = canonical_json(entry)
        for i, diff in enumerate(proposed):
            if i not in used and canonical_json(diff) == wanted:
                used.add(i)
                break
        else:
            raise ConfirmationStateError(
                f"Approved diff {format_diff_summary(entry) if isinstance(entry, dict) else entry!r} "
                "was not proposed by this call"
            )
    kept = [d for i, d in enumerate(proposed) if i in used]
    rejected = [d for i, d in enumerate(proposed) if i not in used]
    return kept, rejected


class EditToolHandler(ConfirmationHandler):
    """Proposes a JSON Patch batch against a draft; supports partial approval.

    Input: ``{"draftId": str, "patches": [...], "systemIds": [...]?}``. The
    draft is only updated once the edit is confirmed (or immediately in
    auto mode).
    """

    name = "edit_tool"
    policy = EDIT_TOOL_POLICY
    valid_actions = (ConfirmationAction.CONFIRMED, ConfirmationAction.DECLINED, ConfirmationAction.PARTIAL)
    declined_message = "All changes rejected by user."

    async def execute(self, call_input: dict[str, Any], session: "ConfirmationSession") -> Any:
        draft_id = call_input.get("draftId")
        draft = session.get_draft(draft_id)
        if draft is None:
            return {
                "success": False,
                "error": f"Draft not found: {draft_id}",
                "next_step": "Create a draft before editing it.",
            }
        patches = call_input.get("patches")
        if isinstance(patches, dict):
            patches = [patches]
        if not patches:
            return {"success": False, "error": "No patches provided. At least one JSON Patch operation is required."}
        try:
            result = apply_patches(draft, patches, system_ids=call_input.get("systemIds"))
        except PatchError as exc:
            return {
                "success": False,
                "draftId": draft_id,
                "error": str(exc),
                "details": exc.details,
                "next_step": "Check patch paths against the actual tool config and try again.",
            }
        return {
            "success": True,
            "draftId": draft_id,
            "toolId": result.document.get("id"),
            "originalConfig": draft,
            "config": result.document,
            "diffs": result.diffs,
            "note": f"Tool edited with {len(result.diffs)} change(s).",
        }

    async def commit(self, output: Any, session: "ConfirmationSession") -> None:
        session.put_draft(output["config"], draft_id=output["draftId"])

    def _proposed(self, record: ConfirmationRecord) -> list[dict[str, Any]]:
        if isinstance(record.output, dict) and "diffs" in record.output:
            return list(record.output["diffs"])
        patches = record.input.get("patches") or []
        return [op.to_diff() for op in validate_patches(patches)]

    async def process_confirmation(
        self,
        record: ConfirmationRecord,
        action: ConfirmationAction,
        session: "ConfirmationSession",
        approved_diffs: Optional[list] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Resolution:
        if action == ConfirmationAction.DECLINED:
            proposed = self._proposed(record)
            return Resolution(
                status=ConfirmationStatus.DECLINED,
                output={**(record.output or {}), "userApproved": False, "rejected": True,
                        "message": self.declined_message},
                message=self.declined_message,
                applied_diffs=[],
                rejected_diffs=proposed,
            )

        if action == ConfirmationAction.CONFIRMED:
            output = record.output
            if record.execution_mode == ExecutionMode.CONFIRM_BEFORE_EXECUTION:
                output = await self.execute(record.input, session)
            if not is_success(output):
                return Resolution(status=ConfirmationStatus.COMPLETED, output=output, message=output.get("error"))
            await self.commit(output, session)
            message = "All changes approved and applied."
            return Resolution(
                status=ConfirmationStatus.COMPLETED,
                output={**output, "userApproved": True, "message": message},
                message=message,
                applied_diffs=list(output["diffs"]),
                rejected_diffs=[],
            )

        return await self._partial(record, session, approved_diffs or [])

    async def _partial(self, record: ConfirmationRecord, session: "ConfirmationSession",
                       approved: list) -> Resolution:
        draft_id = record.input.get("draftId")
        base = record.output if isinstance(record.output, dict) else {}
        original = base.get("originalConfig") or session.get_draft(draft_id)
        if original is None:
            raise ConfirmationStateError(f"Draft not found: {draft_id}", call_id=record.call_id)

        kept, rejected = split_diffs(self._proposed(record), approved)
        config = original
        if kept:
            try:
                # Approved diffs run as their own batch against the untouched original
                config = apply_patches(original, kept, system_ids=record.input.get("systemIds")).document
            except PatchError as exc:
                logger.info(f"[Confirmations] partial approval for {record.call_id} not applicable: {exc}")
                message = f"Approved changes could not be applied without the rejected ones: {exc}"
                return Resolution(
                    status=ConfirmationStatus.COMPLETED,
                    output={**base, "success": False, "config": original, "error": message},
                    message=message,
                    applied_diffs=[],
                    rejected_diffs=kept + rejected,
                )

        session.put_draft(config, draft_id=draft_id)
        message = f"User PARTIALLY approved: {len(kept)} change(s) APPLIED, {len(rejected)} REJECTED."
        return Resolution(
            status=ConfirmationStatus.COMPLETED,
            output={
                **base,
                "success": True,
                "draftId": draft_id,
                "originalConfig": original,
                "config": config,
                "userApproved": True,
                "partialApproval": True,
                "message": message,
                "appliedChanges": [format_diff_summary(d) for d in kept],
                "rejectedChanges": [format_diff_summary(d) for d in rejected],
            },
            message=message,
            applied_diffs=kept,
            rejected_diffs=rejected,
        )


# ── run_tool / call_system ───────────────────────────────────────────────────


def _run_summary(result) -> dict[str, Any]:
    return {
        "success": result.success,
        "runId": result.run_id,
        "status": result.status.value,
        "data": result.data,
        "error": result.error,
        "failedStepId": result.failed_step_id,
        "stepResults": [
            {"stepId": s.step_id, "success": s.success, "data": s.data, "error": s.error}
            for s in result.step_results
        ],
    }


class RunToolHandler(ConfirmationHandler):
    """Runs a saved tool document or a session draft through the engine.

    Input: ``{"tool": {...}}`` or ``{"draftId": str}``, plus ``payload``.
    """

    name = "run_tool"
    policy = RUN_TOOL_POLICY

    def __init__(self, engine: "ToolEngine"):
        self.engine = engine

    async def execute(self, call_input: dict[str, Any], session: "ConfirmationSession") -> Any:
        tool = call_input.get("tool")
        if tool is None and call_input.get("draftId"):
            tool = session.get_draft(call_input["draftId"])
        if tool is None:
            return {"success": False, "error": "Provide either 'tool' or an existing 'draftId'."}
        options = RunOptions(run_id=call_input["runId"]) if call_input.get("runId") else RunOptions()
        result = await self.engine.run_tool(tool, call_input.get("payload") or {}, options)
        return _run_summary(result)


class CallSystemHandler(ConfirmationHandler):
    """A single request against a system, with that system's credentials.

    Input: ``{"systemId", "url", "method", "headers", "queryParams", "body", "payload"}``.
    By default GETs run straight away and anything else waits for confirmation.
    """

    name = "call_system"
    policy = CALL_SYSTEM_POLICY

    def __init__(self, engine: "ToolEngine"):
        self.engine = engine

    async def execute(self, call_input: dict[str, Any], session: "ConfirmationSession") -> Any:
        if not call_input.get("url"):
            return {"success": False, "error": "call_system requires a 'url'"}
        config = {
            "type": "request",
            "systemId": call_input.get("systemId"),
            "url": call_input["url"],
            "method": str(call_input.get("method") or "GET").upper(),
            "headers": call_input.get("headers") or {},
            "queryParams": call_input.get("queryParams") or {},
            "body": call_input.get("body"),
        }
        tool = Tool.model_validate({
            "id": f"call_system_{call_input.get('systemId') or 'adhoc'}",
            "steps": [{"id": "call", "config": config}],
        })
        result = await self.engine.run_tool(tool, call_input.get("payload") or {})
        step = result.step_results[0] if result.step_results else None
        return {
            "success": result.success,
            "systemId": call_input.get("systemId"),
            "data": step.outcome.data if step is not None and step.outcome is not None else None,
            "error": result.error,
        }


# ── authenticate_oauth ───────────────────────────────────────────────────────


class AuthenticateOAuthHandler(ConfirmationHandler):
    """Starts an OAuth authorization-code flow and stores the tokens it yields.

    Input: ``{"systemId", "authorizationUrl", "clientId", "scopes", "redirectUri", ...}``.
    The call waits for ``oauth_success`` (payload ``{"tokens": {...}}``),
    ``oauth_failure`` (payload ``{"error": str}``) or ``declined``.
    """

    name = "authenticate_oauth"
    policy = AUTHENTICATE_OAUTH_POLICY
    valid_actions = (ConfirmationAction.OAUTH_SUCCESS, ConfirmationAction.OAUTH_FAILURE, ConfirmationAction.DECLINED)
    declined_message = "OAuth authentication cancelled by user"

    def __init__(self, credential_store: SystemCredentialStore):
        self.credential_store = credential_store

    async def execute(self, call_input: dict[str, Any], session: "ConfirmationSession") -> Any:
        system_id = call_input.get("systemId")
        auth_url = call_input.get("authorizationUrl")
        if not system_id or not auth_url:
            return {"success": False, "error": "authenticate_oauth requires 'systemId' and 'authorizationUrl'"}
        oauth_config = {k: v for k, v in call_input.items() if k not in ("systemId",) and v is not None}
        params = {"response_type": "code", "client_id": call_input.get("clientId", "")}
        if call_input.get("redirectUri"):
            params["redirect_uri"] = call_input["redirectUri"]
        scopes = call_input.get("scopes")
        if scopes:
            params["scope"] = scopes if isinstance(scopes, str) else " ".join(scopes)
        separator = "&" if "?" in auth_url else "?"
        return {
            "success": True,
            "requiresOAuth": True,
            "systemId": system_id,
            "oauthConfig": oauth_config,
            "authorizationUrl": f"{auth_url}{separator}{urlencode(params)}",
        }

    async def process_confirmation(
        self,
        record: ConfirmationRecord,
        action: ConfirmationAction,
        session: "ConfirmationSession",
        approved_diffs: Optional[list] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Resolution:
        payload = payload or {}
        output = record.output if isinstance(record.output, dict) else {}
        system_id = payload.get("systemId") or output.get("systemId")

        if action == ConfirmationAction.DECLINED:
            return Resolution(
                status=ConfirmationStatus.DECLINED,
                output={"success": False, "cancelled": True, "message": self.declined_message},
                message=self.declined_message,
            )
        if action == ConfirmationAction.OAUTH_FAILURE:
            error = payload.get("error") or "OAuth authentication failed"
            return Resolution(
                status=ConfirmationStatus.COMPLETED,
                output={"success": False, "error": error, "systemId": system_id},
                message=error,
            )

        tokens = payload.get("tokens") or {}
        if not tokens.get("access_token"):
            error = "OAuth flow completed but no access_token received."
            return Resolution(status=ConfirmationStatus.COMPLETED,
                              output={"success": False, "error": error}, message=error)
        try:
            try:
                current = self.credential_store.retrieve(system_id)
            except CredentialNotFound:
                current = {}
            oauth_config = dict(output.get("oauthConfig") or {})
            oauth_config.pop("authorizationUrl", None)
            extra_headers = oauth_config.pop("extraHeaders", None)
            updated = {**current, **oauth_config}
            if extra_headers:
                updated["extraHeaders"] = extra_headers if isinstance(extra_headers, str) else json.dumps(extra_headers)
            for key in ("access_token", "refresh_token", "token_type", "expires_at"):
                if tokens.get(key) is not None:
                    updated[key] = tokens[key]
            self.credential_store.store(system_id, updated)
        except CredentialError as exc:
            error = f"OAuth succeeded but failed to save credentials: {exc}"
            return Resolution(status=ConfirmationStatus.COMPLETED,
                              output={"success": False, "error": error}, message=error)

        message = "OAuth authentication completed and credentials saved to system."
        return Resolution(
            status=ConfirmationStatus.COMPLETED,
            output={"success": True, "systemId": system_id, "message": message},
            message=message,
        )
