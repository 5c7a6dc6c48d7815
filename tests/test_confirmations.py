"""Confirmation state machine tests: modes, actions, partial edits and OAuth."""

import pytest

from conduit.confirmations import (
    AuthenticateOAuthHandler, CallSystemHandler, ConfirmationHandler, ConfirmationSession, EditToolHandler,
    RunToolHandler, ToolPolicy, get_effective_mode, split_diffs,
)
from conduit.exceptions import ConfirmationStateError
from conduit.types import ConfirmationAction, ConfirmationStatus, ExecutionMode

_PATCHES = [
    {"op": "replace", "path": "/instruction", "value": "Sync active users"},
    {"op": "add", "path": "/description", "value": "Nightly sync"},
    {"op": "add", "path": "/name", "value": "User sync"},
]


def _draft() -> dict:
    return {
        "id": "sync-users",
        "instruction": "Sync users",
        "steps": [{"id": "list", "config": {"type": "request", "systemId": "crm", "url": "https://crm/users"}}],
    }


def _edit_session(mode=None) -> ConfirmationSession:
    policies = {"edit_tool": {"mode": mode}} if mode else None
    return ConfirmationSession([EditToolHandler()], user_policies=policies)


class _Counter(ConfirmationHandler):
    """Handler whose action counts invocations and can be told to fail."""

    name = "counter"
    policy = ToolPolicy(default_mode=ExecutionMode.CONFIRM_BEFORE_EXECUTION)

    def __init__(self, fail=False, raise_exc=False):
        self.calls = 0
        self.commits = 0
        self.fail = fail
        self.raise_exc = raise_exc

    async def execute(self, call_input, session):
        self.calls += 1
        if self.raise_exc:
            raise RuntimeError("backend exploded")
        if self.fail:
            return {"success": False, "error": "nope"}
        return {"success": True, "count": self.calls}

    async def commit(self, output, session):
        self.commits += 1


# ── Policies ─────────────────────────────────────────────────────────────────


def test_effective_mode_precedence():
    policy = ToolPolicy(
        default_mode=ExecutionMode.AUTO,
        user_mode_options=[ExecutionMode.AUTO, ExecutionMode.CONFIRM_BEFORE_EXECUTION],
    )
    assert get_effective_mode(policy, {}) == ExecutionMode.AUTO
    assert get_effective_mode(policy, {}, {"mode": "confirm_before_execution"}) == \
        ExecutionMode.CONFIRM_BEFORE_EXECUTION
    # Not among the user's options: falls back to the default
    assert get_effective_mode(policy, {}, {"mode": "confirm_after_execution"}) == ExecutionMode.AUTO

    computed = policy.model_copy(update={"compute_mode_from_input": lambda i, u: ExecutionMode.CONFIRM_AFTER_EXECUTION})
    assert get_effective_mode(computed, {}, {"mode": "auto"}) == ExecutionMode.CONFIRM_AFTER_EXECUTION


# ── Lifecycle ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_confirm_before_execution_runs_only_after_confirmation():
    handler = _Counter()
    session = ConfirmationSession([handler])
    record = await session.start_call("counter", {"x": 1})
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION
    assert handler.calls == 0
    assert [r.call_id for r in session.pending()] == [record.call_id]

    resolved = await session.resolve_confirmation(record.call_id, "confirmed")
    assert resolved.status == ConfirmationStatus.COMPLETED
    assert resolved.output == {"success": True, "count": 1}
    assert handler.commits == 1
    assert resolved.history == [
        ConfirmationStatus.PENDING,
        ConfirmationStatus.RUNNING,
        ConfirmationStatus.AWAITING_CONFIRMATION,
        ConfirmationStatus.COMPLETED,
    ]
    assert session.pending() == []


@pytest.mark.asyncio
async def test_declined_before_execution_never_runs():
    handler = _Counter()
    session = ConfirmationSession([handler])
    record = await session.start_call("counter")
    resolved = await session.resolve_confirmation(record.call_id, ConfirmationAction.DECLINED)
    assert resolved.status == ConfirmationStatus.DECLINED
    assert resolved.output["rejected"] is True
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_a_call_resolves_exactly_once():
    session = ConfirmationSession([_Counter()])
    record = await session.start_call("counter")
    await session.resolve_confirmation(record.call_id, "confirmed")
    with pytest.raises(ConfirmationStateError, match="not awaiting confirmation") as exc_info:
        await session.resolve_confirmation(record.call_id, "declined")
    assert exc_info.value.status == "completed"


@pytest.mark.asyncio
async def test_unknown_call_action_and_tool():
    session = ConfirmationSession([_Counter()])
    record = await session.start_call("counter")
    with pytest.raises(ConfirmationStateError, match="Unknown tool call"):
        await session.resolve_confirmation("missing", "confirmed")
    with pytest.raises(ConfirmationStateError, match="Unknown confirmation action"):
        await session.resolve_confirmation(record.call_id, "maybe")
    with pytest.raises(ConfirmationStateError, match="not valid for 'counter'"):
        await session.resolve_confirmation(record.call_id, "partial", approved_diffs=[0])
    with pytest.raises(ConfirmationStateError, match="No handler registered"):
        await session.start_call("nothing")
    assert session.get(record.call_id).status == ConfirmationStatus.AWAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_duplicate_call_id_is_rejected():
    session = ConfirmationSession([_Counter()])
    await session.start_call("counter", call_id="call-1")
    with pytest.raises(ConfirmationStateError, match="already exists"):
        await session.start_call("counter", call_id="call-1")


@pytest.mark.asyncio
async def test_resolved_calls_can_be_discarded():
    session = ConfirmationSession([_Counter()])
    waiting = await session.start_call("counter")
    done = await session.start_call("counter")
    await session.resolve_confirmation(done.call_id, "declined")

    with pytest.raises(ConfirmationStateError, match="still 'awaiting_confirmation'"):
        session.discard(waiting.call_id)
    assert session.discard(done.call_id) is True
    assert session.discard(done.call_id) is False
    assert done.call_id not in session._locks
    with pytest.raises(ConfirmationStateError, match="Unknown tool call"):
        session.get(done.call_id)
    assert [r.call_id for r in session.pending()] == [waiting.call_id]


@pytest.mark.asyncio
async def test_discard_resolved_and_close():
    session = ConfirmationSession([_Counter(), EditToolHandler()])
    waiting = await session.start_call("counter")
    for _ in range(2):
        record = await session.start_call("counter")
        await session.resolve_confirmation(record.call_id, "confirmed")
    assert session.discard_resolved() == 2
    assert list(session._records) == [waiting.call_id]

    session.put_draft(_draft(), "d1")
    session.close()
    assert session.pending() == []
    assert session._locks == {}
    assert session.get_draft("d1") is None


@pytest.mark.asyncio
async def test_failed_action_never_awaits_confirmation():
    handler = _Counter(fail=True)
    handler.policy = ToolPolicy(default_mode=ExecutionMode.CONFIRM_AFTER_EXECUTION)
    session = ConfirmationSession([handler])
    record = await session.start_call("counter")
    assert record.status == ConfirmationStatus.COMPLETED
    assert record.error == "nope"
    assert handler.commits == 0


@pytest.mark.asyncio
async def test_raising_action_ends_in_error():
    handler = _Counter(raise_exc=True)
    handler.policy = ToolPolicy(default_mode=ExecutionMode.AUTO)
    session = ConfirmationSession([handler])
    record = await session.start_call("counter")
    assert record.status == ConfirmationStatus.ERROR
    assert record.error == "backend exploded"


@pytest.mark.asyncio
async def test_action_raising_after_confirmation_ends_in_error():
    handler = _Counter(raise_exc=True)
    session = ConfirmationSession([handler])
    record = await session.start_call("counter")
    resolved = await session.resolve_confirmation(record.call_id, "confirmed")
    assert resolved.status == ConfirmationStatus.ERROR
    assert "backend exploded" in resolved.error


# ── edit_tool ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_partial_approval_before_execution():
    """Three proposed patches, two approved: the draft reflects exactly those two."""
    session = _edit_session("confirm_before_execution")
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES})
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION
    assert session.get_draft(draft_id) == _draft()

    resolved = await session.resolve_confirmation(record.call_id, "partial", approved_diffs=_PATCHES[:2])
    assert resolved.status == ConfirmationStatus.COMPLETED
    assert resolved.applied_diffs == _PATCHES[:2]
    assert resolved.rejected_diffs == _PATCHES[2:]
    assert resolved.output["appliedChanges"] == ["replace /instruction", "add /description"]

    draft = session.get_draft(draft_id)
    assert draft["instruction"] == "Sync active users"
    assert draft["description"] == "Nightly sync"
    assert "name" not in draft


@pytest.mark.asyncio
async def test_partial_approval_by_index_after_execution():
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES})
    assert record.execution_mode == ExecutionMode.CONFIRM_AFTER_EXECUTION
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION
    assert record.output["config"]["name"] == "User sync"
    assert "name" not in session.get_draft(draft_id)

    resolved = await session.resolve_confirmation(record.call_id, "partial", approved_diffs=[2])
    assert resolved.applied_diffs == [_PATCHES[2]]
    assert session.get_draft(draft_id)["name"] == "User sync"
    assert session.get_draft(draft_id)["instruction"] == "Sync users"


@pytest.mark.asyncio
async def test_partial_approval_that_depends_on_rejected_diffs():
    patches = [
        {"op": "add", "path": "/outputTransform", "value": "(c) => c"},
        {"op": "replace", "path": "/outputTransform", "value": "(c) => c.list"},
    ]
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": patches})
    resolved = await session.resolve_confirmation(record.call_id, "partial", approved_diffs=[1])
    assert resolved.status == ConfirmationStatus.COMPLETED
    assert resolved.output["success"] is False
    assert resolved.applied_diffs == []
    assert session.get_draft(draft_id) == _draft()


@pytest.mark.asyncio
async def test_partial_needs_an_approved_diff():
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES})
    with pytest.raises(ConfirmationStateError, match="at least one approved diff"):
        await session.resolve_confirmation(record.call_id, "partial", approved_diffs=[])


@pytest.mark.asyncio
async def test_confirm_after_execution_applies_all():
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES})
    resolved = await session.resolve_confirmation(record.call_id, "confirmed")
    assert resolved.output["userApproved"] is True
    assert resolved.applied_diffs == _PATCHES
    assert resolved.rejected_diffs == []
    assert session.get_draft(draft_id)["name"] == "User sync"


@pytest.mark.asyncio
async def test_decline_leaves_draft_untouched():
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES})
    resolved = await session.resolve_confirmation(record.call_id, "declined")
    assert resolved.status == ConfirmationStatus.DECLINED
    assert resolved.rejected_diffs == _PATCHES
    assert resolved.message == "All changes rejected by user."
    assert session.get_draft(draft_id) == _draft()


@pytest.mark.asyncio
async def test_auto_mode_applies_immediately():
    session = _edit_session("auto")
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {"draftId": draft_id, "patches": _PATCHES[:1]})
    assert record.status == ConfirmationStatus.COMPLETED
    assert session.get_draft(draft_id)["instruction"] == "Sync active users"


@pytest.mark.asyncio
async def test_bad_patch_completes_without_confirmation():
    session = _edit_session()
    draft_id = session.put_draft(_draft())
    record = await session.start_call("edit_tool", {
        "draftId": draft_id,
        "patches": [{"op": "replace", "path": "/outputTransform", "value": "(c) => c"}],
    })
    assert record.status == ConfirmationStatus.COMPLETED
    assert record.output["success"] is False
    assert "Use 'add'" in record.error


@pytest.mark.asyncio
async def test_missing_draft():
    session = _edit_session()
    record = await session.start_call("edit_tool", {"draftId": "nope", "patches": _PATCHES})
    assert record.status == ConfirmationStatus.COMPLETED
    assert record.error == "Draft not found: nope"


def test_split_diffs():
    proposed = [{"op": "remove", "path": "/a"}, {"op": "remove", "path": "/a"}, {"op": "remove", "path": "/b"}]
    kept, rejected = split_diffs(proposed, [{"path": "/a", "op": "remove"}])
    assert kept == [proposed[0]]
    assert rejected == proposed[1:]
    with pytest.raises(ConfirmationStateError, match="was not proposed"):
        split_diffs(proposed, [{"op": "remove", "path": "/c"}])
    with pytest.raises(ConfirmationStateError, match="out of range"):
        split_diffs(proposed, [3])


# ── run_tool / call_system ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_tool_runs_a_draft(engine):
    session = ConfirmationSession([RunToolHandler(engine)])
    draft_id = session.put_draft({"id": "calc", "steps": [], "outputTransform": "(c) => c.a * 2"})
    record = await session.start_call("run_tool", {"draftId": draft_id, "payload": {"a": 21}})
    assert record.status == ConfirmationStatus.COMPLETED
    assert record.output["success"] is True
    assert record.output["data"] == 42


@pytest.mark.asyncio
async def test_run_tool_without_a_tool(engine):
    session = ConfirmationSession([RunToolHandler(engine)])
    record = await session.start_call("run_tool", {})
    assert record.error == "Provide either 'tool' or an existing 'draftId'."


@pytest.mark.asyncio
async def test_call_system_runs_gets_straight_away(engine, fake_connector):
    session = ConfirmationSession([CallSystemHandler(engine)])
    record = await session.start_call("call_system", {"systemId": "crm", "url": "https://crm.example.com/me"})
    assert record.status == ConfirmationStatus.COMPLETED
    assert record.output["success"] is True
    assert len(fake_connector.calls) == 1


@pytest.mark.asyncio
async def test_call_system_waits_before_writes(engine, fake_connector):
    session = ConfirmationSession([CallSystemHandler(engine)])
    record = await session.start_call("call_system", {
        "systemId": "crm", "url": "https://crm.example.com/users", "method": "post", "body": {"name": "a"},
    })
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION
    assert record.output == {"pending": True, "method": "POST", "url": "https://crm.example.com/users",
                             "systemId": "crm"}
    assert fake_connector.calls == []

    resolved = await session.resolve_confirmation(record.call_id, "confirmed")
    assert resolved.output["success"] is True
    assert fake_connector.calls[0]["method"] == "POST"
    assert fake_connector.calls[0]["body"] == {"name": "a"}


@pytest.mark.asyncio
async def test_call_system_run_everything(engine, fake_connector):
    session = ConfirmationSession([CallSystemHandler(engine)],
                                  user_policies={"call_system": {"autoExecute": "run_everything"}})
    record = await session.start_call("call_system", {"url": "https://crm.example.com/x", "method": "DELETE"})
    assert record.status == ConfirmationStatus.COMPLETED


@pytest.mark.asyncio
async def test_call_system_ask_every_time(engine):
    session = ConfirmationSession([CallSystemHandler(engine)],
                                  user_policies={"call_system": {"autoExecute": "ask_every_time"}})
    record = await session.start_call("call_system", {"url": "https://crm.example.com/x"})
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION


# ── authenticate_oauth ───────────────────────────────────────────────────────


_OAUTH_INPUT = {
    "systemId": "crm",
    "authorizationUrl": "https://auth.example.com/authorize",
    "clientId": "client-1",
    "scopes": ["read", "write"],
    "redirectUri": "https://app.example.com/cb",
}


@pytest.mark.asyncio
async def test_oauth_flow_stores_tokens(credential_store):
    credential_store.store("crm", {"client_secret": "shh"})
    session = ConfirmationSession([AuthenticateOAuthHandler(credential_store)])
    record = await session.start_call("authenticate_oauth", _OAUTH_INPUT)
    assert record.status == ConfirmationStatus.AWAITING_CONFIRMATION
    url = record.output["authorizationUrl"]
    assert url.startswith("https://auth.example.com/authorize?response_type=code&client_id=client-1")
    assert "scope=read+write" in url

    resolved = await session.resolve_confirmation(
        record.call_id, "oauth_success",
        payload={"tokens": {"access_token": "at-1", "refresh_token": "rt-1"}},
    )
    assert resolved.status == ConfirmationStatus.COMPLETED
    assert resolved.output["success"] is True
    stored = credential_store.retrieve("crm")
    assert stored["access_token"] == "at-1"
    assert stored["refresh_token"] == "rt-1"
    assert stored["client_secret"] == "shh"
    assert stored["clientId"] == "client-1"
    assert "authorizationUrl" not in stored


@pytest.mark.asyncio
async def test_oauth_success_without_access_token(credential_store):
    session = ConfirmationSession([AuthenticateOAuthHandler(credential_store)])
    record = await session.start_call("authenticate_oauth", _OAUTH_INPUT)
    resolved = await session.resolve_confirmation(record.call_id, "oauth_success", payload={"tokens": {}})
    assert resolved.output["success"] is False
    assert resolved.error == "OAuth flow completed but no access_token received."
    assert credential_store.list() == []


@pytest.mark.asyncio
async def test_oauth_failure_and_cancel(credential_store):
    session = ConfirmationSession([AuthenticateOAuthHandler(credential_store)])
    failed = await session.start_call("authenticate_oauth", _OAUTH_INPUT)
    resolved = await session.resolve_confirmation(failed.call_id, "oauth_failure", payload={"error": "access_denied"})
    assert resolved.status == ConfirmationStatus.COMPLETED
    assert resolved.error == "access_denied"

    cancelled = await session.start_call("authenticate_oauth", _OAUTH_INPUT)
    resolved = await session.resolve_confirmation(cancelled.call_id, "declined")
    assert resolved.status == ConfirmationStatus.DECLINED
    assert resolved.message == "OAuth authentication cancelled by user"


@pytest.mark.asyncio
async def test_oauth_rejects_plain_confirmation(credential_store):
    session = ConfirmationSession([AuthenticateOAuthHandler(credential_store)])
    record = await session.start_call("authenticate_oauth", _OAUTH_INPUT)
    with pytest.raises(ConfirmationStateError, match="Valid actions: oauth_success, oauth_failure, declined"):
        await session.resolve_confirmation(record.call_id, "confirmed")
