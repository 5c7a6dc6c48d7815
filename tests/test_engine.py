"""ToolEngine tests: step ordering, loops, failures, cancellation, callbacks, output."""

import asyncio

import pytest

from conduit.exceptions import ConnectorError
from conduit.types import ConnectorResult, LoopResult, RunOptions, RunStatus, SingleResult


def _request(step_id, url, **extra) -> dict:
    config = {"type": "request", "systemId": "api", "url": url, "method": extra.pop("method", "GET")}
    config.update(extra.pop("config", {}))
    return {"id": step_id, "config": config, **extra}


def _transform(step_id, code, **extra) -> dict:
    return {"id": step_id, "config": {"type": "transform", "transformCode": code}, **extra}


def _users_and_orders(inputs):
    url = inputs["url"]
    if url.endswith("/users"):
        return {"users": [{"id": 1}, {"id": 2}, {"id": 3}]}
    user_id = int(url.split("/users/")[1].split("/")[0])
    return {"userId": user_id, "orders": [user_id * 100]}


# ── Happy path ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_two_step_tool_runs_in_order(make_engine, connector_factory, sample_tool, credential_store):
    credential_store.store("crm", {"token": "crm-secret-token"})
    connector = connector_factory(_users_and_orders)
    engine = make_engine(connector)

    result = await engine.run_tool(sample_tool, {"region": "eu"})

    assert result.status == RunStatus.COMPLETED
    assert result.success is True
    assert result.data == [
        {"userId": 1, "orders": [100]},
        {"userId": 2, "orders": [200]},
        {"userId": 3, "orders": [300]},
    ]
    assert [s.step_id for s in result.step_results] == ["getUsers", "getOrders"]
    assert connector.calls[0]["headers"] == {"Authorization": "Bearer crm-secret-token"}
    assert [c["url"] for c in connector.calls[1:]] == [
        "https://shop.example.com/users/1/orders",
        "https://shop.example.com/users/2/orders",
        "https://shop.example.com/users/3/orders",
    ]


@pytest.mark.asyncio
async def test_step_outcomes_are_tagged(make_engine, connector_factory, sample_tool, credential_store):
    credential_store.store("crm", {"token": "t0k3n"})
    engine = make_engine(connector_factory(_users_and_orders))
    result = await engine.run_tool(sample_tool)
    first, second = result.step_results
    assert isinstance(first.outcome, SingleResult)
    assert isinstance(second.outcome, LoopResult)
    assert first.data["currentItem"] == {}
    assert [e["currentItem"] for e in second.data] == [{"id": 1}, {"id": 2}, {"id": 3}]


@pytest.mark.asyncio
async def test_transform_steps_see_earlier_results(engine):
    tool = {
        "id": "t",
        "steps": [
            _transform("numbers", "(c) => c.values.map(v => v * 2)"),
            _transform("total", "(c) => c.numbers.data.reduce((a, b) => a + b, 0)"),
        ],
        "outputTransform": "(c) => ({ total: c.total.data })",
    }
    result = await engine.run_tool(tool, {"values": [1, 2, 3]})
    assert result.data == {"total": 12}


@pytest.mark.asyncio
async def test_no_output_transform_returns_context_without_credentials(engine, fake_connector):
    tool = {"id": "t", "steps": [_request("fetch", "https://api.example.com/ping")]}
    options = RunOptions(credentials={"api": {"key": "k-123456"}})
    result = await engine.run_tool(tool, {"q": "x"}, options)
    assert result.success
    assert set(result.data) == {"fetch", "q"}
    assert "api_key" not in result.data
    assert result.data["fetch"]["success"] is True


@pytest.mark.asyncio
async def test_payload_fields_shadow_step_ids(engine):
    tool = {"id": "t", "steps": [_transform("name", "(c) => 'from step'")], "outputTransform": "(c) => c.name"}
    result = await engine.run_tool(tool, {"name": "from payload"})
    assert result.data == "from payload"


@pytest.mark.asyncio
async def test_legacy_keys_are_accepted(engine):
    tool = {
        "id": "legacy",
        "steps": [{"id": "each", "loopSelector": "(c) => c.ids", "config": {"transformCode": "(c) => c.currentItem + 1"}}],
        "finalTransform": "(c) => c.each.map(e => e.data)",
    }
    result = await engine.run_tool(tool, {"ids": [1, 2]})
    assert result.data == [2, 3]


@pytest.mark.asyncio
async def test_request_body_and_query_are_resolved(engine, fake_connector):
    tool = {
        "id": "t",
        "steps": [_request(
            "create",
            "https://api.example.com/items",
            method="POST",
            config={"body": {"name": "<<name>>"}, "queryParams": {"dryRun": "<<(c) => c.dry>>"}},
        )],
    }
    await engine.run_tool(tool, {"name": "widget"})
    call = fake_connector.calls[0]
    assert call["method"] == "POST"
    assert call["body"] == {"name": "widget"}
    assert call["query_params"] == {}


# ── Failures ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_loop_with_one_failing_element(make_engine, connector_factory):
    """The second of three calls fails; the step keeps all three envelopes."""

    def handler(inputs):
        if inputs["url"].endswith("/2"):
            raise ConnectorError("HTTP 500 Internal Server Error: exploded")
        return {"ok": inputs["url"]}

    engine = make_engine(connector_factory(handler))
    tool = {
        "id": "t",
        "steps": [_request("each", "https://api.example.com/items/<<(c) => c.currentItem>>",
                           dataSelector="(c) => c.ids")],
    }
    result = await engine.run_tool(tool, {"ids": [1, 2, 3]})

    assert result.success
    envelopes = result.step_results[0].data
    assert len(envelopes) == 3
    assert [e["success"] for e in envelopes] == [True, False, True]
    assert "exploded" in envelopes[1]["error"]
    assert "error" not in envelopes[0] and "error" not in envelopes[2]


@pytest.mark.asyncio
async def test_failed_connector_result_fails_single_step(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: ConnectorResult(
        success=False, error="HTTP 404 Not Found: no such user", status_code=404,
    ))
    engine = make_engine(connector)
    tool = {
        "id": "t",
        "steps": [_request("a", "https://api.example.com/a"), _transform("b", "(c) => 1")],
    }
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert result.failed_step_id == "a"
    assert "404" in result.error
    assert [s.step_id for s in result.step_results] == ["a"]
    assert result.step_results[0].data["success"] is False


@pytest.mark.asyncio
async def test_fatal_error_keeps_completed_steps(engine):
    tool = {
        "id": "t",
        "steps": [
            _transform("ok", "(c) => 'done'"),
            _transform("broken", "(c) => c.nothing.here"),
            _transform("never", "(c) => 'unreached'"),
        ],
    }
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert result.failed_step_id == "broken"
    assert [s.step_id for s in result.step_results] == ["ok", "broken"]
    assert result.step_results[0].success is True
    assert result.step_results[0].data["data"] == "done"
    assert "Cannot read properties of undefined" in result.error


@pytest.mark.asyncio
async def test_selector_type_error_is_step_fatal(engine):
    tool = {"id": "t", "steps": [_transform("s", "(c) => 1", dataSelector="(c) => c.count")]}
    result = await engine.run_tool(tool, {"count": 3})
    assert result.status == RunStatus.FAILED
    assert "must return an object or an array" in result.error


@pytest.mark.asyncio
async def test_runaway_allocation_fails_the_step(engine):
    tool = {"id": "t", "steps": [_transform("s", '(c) => "a".repeat(1e18)')]}
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert result.failed_step_id == "s"
    assert "limit is" in result.error


@pytest.mark.asyncio
async def test_continue_behaviour_records_failure_and_carries_on(engine):
    tool = {
        "id": "t",
        "steps": [
            _transform("optional", "(c) => c.missing.value", failureBehavior="continue"),
            _transform("after", "(c) => 'ran'"),
        ],
        "outputTransform": "(c) => c.after.data",
    }
    result = await engine.run_tool(tool)
    assert result.success
    assert result.data == "ran"
    assert result.step_results[0].success is False
    assert result.step_results[1].success is True


@pytest.mark.asyncio
async def test_output_transform_error_fails_the_run(engine):
    tool = {"id": "t", "steps": [_transform("a", "(c) => 1")], "outputTransform": "(c) => c.b.c"}
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert result.error.startswith("Output transform failed")
    assert len(result.step_results) == 1


@pytest.mark.asyncio
async def test_unsupported_protocol_is_an_element_failure(engine):
    tool = {"id": "t", "steps": [_request("a", "gopher://example.com/x")]}
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert "Unsupported URL protocol" in result.error


@pytest.mark.asyncio
async def test_credentials_are_masked_in_errors(make_engine, connector_factory):
    def handler(inputs):
        raise ConnectorError(f"rejected header {inputs['headers']['Authorization']}")

    engine = make_engine(connector_factory(handler))
    tool = {
        "id": "t",
        "steps": [_request("a", "https://api.example.com/a",
                           config={"headers": {"Authorization": "Bearer <<api_token>>"}})],
    }
    options = RunOptions(credentials={"api": {"token": "sk-live-987654"}})
    result = await engine.run_tool(tool, {}, options)
    assert not result.success
    assert "sk-live-987654" not in result.error
    assert "***" in result.error
    assert "sk-live-987654" not in result.step_results[0].data["error"]


@pytest.mark.asyncio
async def test_run_options_credentials_override_the_store(make_engine, fake_connector, credential_store):
    credential_store.store("api", {"token": "stored"})
    engine = make_engine(fake_connector)
    tool = {
        "id": "t",
        "steps": [_request("a", "https://api.example.com/a", config={"headers": {"X-Token": "<<api_token>>"}})],
    }
    await engine.run_tool(tool, {}, RunOptions(credentials={"api": {"token": "override"}}))
    assert fake_connector.calls[0]["headers"] == {"X-Token": "override"}


# ── Concurrency, cancellation, timeout ───────────────────────────────────────


@pytest.mark.asyncio
async def test_loop_concurrency_comes_from_options(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: inputs["url"], delay=0.01)
    engine = make_engine(connector)
    tool = {"id": "t", "steps": [_request("a", "https://api.example.com/<<(c) => c.currentItem>>",
                                          dataSelector="(c) => c.ids")]}
    result = await engine.run_tool(tool, {"ids": list(range(10))}, RunOptions(loop_concurrency=2))
    assert result.success
    assert connector.max_in_flight == 2
    assert result.step_results[0].outcome.data == [f"https://api.example.com/{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_cancel_by_run_id_aborts_with_partial_results(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: "late", delay=5)
    engine = make_engine(connector)
    tool = {
        "id": "t",
        "steps": [_transform("first", "(c) => 'kept'"), _request("slow", "https://api.example.com/slow")],
    }

    async def cancel_soon():
        await asyncio.sleep(0.05)
        assert engine.cancel("run-42", reason="user pressed stop")

    canceller = asyncio.create_task(cancel_soon())
    result = await asyncio.wait_for(engine.run_tool(tool, {}, RunOptions(run_id="run-42")), timeout=2)
    await canceller

    assert result.status == RunStatus.ABORTED
    assert result.success is False
    assert "user pressed stop" in result.error
    assert [s.step_id for s in result.step_results] == ["first"]
    assert result.step_results[0].data["data"] == "kept"
    assert engine.cancellations.active_runs() == []


@pytest.mark.asyncio
async def test_cancelling_unknown_run_returns_false(engine):
    assert engine.cancel("no-such-run") is False


@pytest.mark.asyncio
async def test_timeout_behaves_like_cancellation(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: "late", delay=5)
    engine = make_engine(connector)
    tool = {"id": "t", "steps": [_request("slow", "https://api.example.com/slow")]}
    result = await asyncio.wait_for(engine.run_tool(tool, {}, RunOptions(timeout_seconds=0.05)), timeout=2)
    assert result.status == RunStatus.ABORTED
    assert "timeout" in result.error
    assert result.step_results == []


@pytest.mark.asyncio
async def test_cancellation_stops_a_loop(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: "ok", delay=0.02)
    engine = make_engine(connector)
    tool = {"id": "t", "steps": [_request("a", "https://api.example.com/<<(c) => c.currentItem>>",
                                          dataSelector="(c) => c.ids")]}
    result = await engine.run_tool(
        tool, {"ids": list(range(100))}, RunOptions(loop_concurrency=1, timeout_seconds=0.1),
    )
    assert result.status == RunStatus.ABORTED
    assert len(connector.calls) < 100


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_share_state(engine):
    tool = {"id": "t", "steps": [_transform("echo", "(c) => c.n")], "outputTransform": "(c) => c.echo.data"}
    results = await asyncio.gather(*(engine.run_tool(tool, {"n": i}) for i in range(10)))
    assert [r.data for r in results] == list(range(10))


# ── Callbacks ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lifecycle_callbacks_fire_in_order(make_engine, fake_connector):
    events = []
    engine = make_engine(fake_connector, callbacks=[lambda event, data: events.append((event, data.get("step_id")))])
    tool = {"id": "t", "steps": [_transform("a", "(c) => 1"), _transform("b", "(c) => c.x.y")]}
    await engine.run_tool(tool)
    assert events == [
        ("run_started", None),
        ("step_started", "a"),
        ("step_completed", "a"),
        ("step_started", "b"),
        ("step_failed", "b"),
        ("run_failed", "b"),
    ]


@pytest.mark.asyncio
async def test_async_callbacks_and_per_call_override(make_engine, fake_connector):
    instance_events, call_events = [], []

    async def per_call(event, data):
        call_events.append(event)

    engine = make_engine(fake_connector, callbacks=[lambda e, d: instance_events.append(e)])
    tool = {"id": "t", "steps": [_transform("a", "(c) => 1")]}
    await engine.run_tool(tool, callbacks=[per_call])
    assert instance_events == []
    assert call_events == ["run_started", "step_started", "step_completed", "run_completed"]

    await engine.run_tool(tool)
    assert instance_events[-1] == "run_completed"


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_the_run(make_engine, fake_connector):
    def broken(event, data):
        raise RuntimeError("callback exploded")

    engine = make_engine(fake_connector, callbacks=[broken])
    result = await engine.run_tool({"id": "t", "steps": [_transform("a", "(c) => 1")]})
    assert result.success


# ── Response filters ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_response_filters_apply_to_output(engine):
    tool = {
        "id": "t",
        "steps": [_transform("user", "(c) => ({ name: 'Ada', ssn: '123-45-6789', password: 'pw' })")],
        "outputTransform": "(c) => c.user.data",
        "responseFilters": [
            {"pattern": "^password$", "target": "keys", "action": "remove"},
            {"pattern": r"\d{3}-\d{2}-\d{4}", "target": "values", "action": "mask", "maskValue": "[ssn]"},
        ],
    }
    result = await engine.run_tool(tool)
    assert result.data == {"name": "Ada", "ssn": "[ssn]"}


@pytest.mark.asyncio
async def test_failing_response_filter_fails_the_run(engine):
    tool = {
        "id": "t",
        "steps": [_transform("user", "(c) => ({ token: 'abc' })")],
        "outputTransform": "(c) => c.user.data",
        "responseFilters": [{"name": "no tokens", "pattern": "token", "action": "fail"}],
    }
    result = await engine.run_tool(tool)
    assert result.status == RunStatus.FAILED
    assert "no tokens" in result.error
