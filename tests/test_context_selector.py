"""Variable context builder and data selector executor tests."""

import asyncio

import pytest

from conduit.core import DataSelectorExecutor, VariableContextBuilder
from conduit.exceptions import ConnectorError, ResolutionError, SelectorTypeError
from conduit.types import LoopResult, ResultEnvelope, SingleResult, Step


def _step(selector=None) -> Step:
    return Step.model_validate({
        "id": "s1",
        "dataSelector": selector,
        "config": {"type": "transform", "transformCode": "(c) => c"},
    })


# ── VariableContextBuilder ───────────────────────────────────────────────────


def test_override_order_payload_wins():
    builder = VariableContextBuilder(
        payload={"page": "from-payload", "crm_token": "payload-token"},
        credentials={"crm_token": "secret", "crm_user": "u"},
    )
    outcomes = {"step1": SingleResult(envelope=ResultEnvelope(data=[1]))}
    context = builder.build(outcomes, current_item={"id": 1}, pagination={"page": 3, "offset": 20})
    assert context["crm_token"] == "payload-token"
    assert context["crm_user"] == "u"
    assert context["page"] == "from-payload"
    assert context["offset"] == 20
    assert context["currentItem"] == {"id": 1}
    assert context["step1"] == {"currentItem": {}, "data": [1], "success": True}


def test_step_results_are_exposed_in_wire_shape():
    builder = VariableContextBuilder()
    loop = LoopResult(items=[
        ResultEnvelope(current_item={"id": 1}, data="a"),
        ResultEnvelope(current_item={"id": 2}, success=False, error="boom"),
    ])
    context = builder.build({"each": loop})
    assert context["each"] == [
        {"currentItem": {"id": 1}, "data": "a", "success": True},
        {"currentItem": {"id": 2}, "data": None, "success": False, "error": "boom"},
    ]


def test_stored_results_are_never_mutated_through_a_context():
    builder = VariableContextBuilder(payload={"filters": {"a": 1}})
    outcome = SingleResult(envelope=ResultEnvelope(data={"users": [1, 2]}))
    context = builder.build({"s": outcome})
    context["s"]["data"]["users"].append(3)
    context["filters"]["a"] = 2
    assert outcome.envelope.data == {"users": [1, 2]}
    assert builder.build({"s": outcome})["filters"] == {"a": 1}


def test_current_item_absent_outside_steps():
    assert "currentItem" not in VariableContextBuilder().build({})


def test_with_pagination_does_not_shadow_payload_or_current_item():
    builder = VariableContextBuilder(payload={"limit": 5})
    base = builder.with_item(builder.build({}), {"id": 9})
    paged = builder.with_pagination(base, {"page": 2, "offset": 50, "limit": 50, "cursor": None, "pageSize": 50})
    assert paged["page"] == 2
    assert paged["offset"] == 50
    assert paged["limit"] == 5
    assert paged["currentItem"] == {"id": 9}


def test_without_credentials():
    builder = VariableContextBuilder(payload={"q": 1}, credentials={"crm_token": "s"})
    assert builder.without_credentials(builder.build({})) == {"q": 1}


# ── DataSelectorExecutor ─────────────────────────────────────────────────────


def _executor(resolver, concurrency=5) -> DataSelectorExecutor:
    return DataSelectorExecutor(resolver, VariableContextBuilder(), concurrency=concurrency)


async def _echo(context):
    return context["currentItem"]


@pytest.mark.asyncio
async def test_no_selector_runs_once_with_empty_item(resolver):
    outcome = await _executor(resolver).execute(_step(), {}, _echo)
    assert isinstance(outcome, SingleResult)
    assert outcome.envelope.current_item == {}
    assert outcome.to_wire() == {"currentItem": {}, "data": {}, "success": True}


@pytest.mark.asyncio
async def test_object_selector_runs_once_with_that_object(resolver):
    outcome = await _executor(resolver).execute(_step("(c) => c.user"), {"user": {"id": 4}}, _echo)
    assert isinstance(outcome, SingleResult)
    assert outcome.envelope.current_item == {"id": 4}


@pytest.mark.asyncio
async def test_array_selector_loops_in_order(resolver):
    """Selector (ctx) => ctx.users over two users gives two envelopes in order."""
    context = {"users": [{"id": 1}, {"id": 2}]}
    outcome = await _executor(resolver).execute(_step("(ctx) => ctx.users"), context, _echo)
    assert isinstance(outcome, LoopResult)
    assert [e.current_item for e in outcome.items] == [{"id": 1}, {"id": 2}]
    assert all(e.success for e in outcome.items)


@pytest.mark.asyncio
async def test_selector_may_be_wrapped_in_placeholder(resolver):
    outcome = await _executor(resolver).execute(_step("<<(c) => c.ids>>"), {"ids": [1, 2, 3]}, _echo)
    assert outcome.data == [1, 2, 3]


@pytest.mark.asyncio
async def test_empty_array_means_zero_invocations(resolver):
    calls = []

    async def invoke(context):
        calls.append(context)

    outcome = await _executor(resolver).execute(_step("(c) => c.items"), {"items": []}, invoke)
    assert isinstance(outcome, LoopResult)
    assert outcome.items == []
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [5, "text", None, True])
async def test_scalar_selector_result_is_a_type_error(resolver, value):
    with pytest.raises(SelectorTypeError) as exc_info:
        await _executor(resolver).execute(_step("(c) => c.v"), {"v": value}, _echo)
    assert exc_info.value.step_id == "s1"


@pytest.mark.asyncio
async def test_undefined_selector_result_is_a_type_error(resolver):
    with pytest.raises(SelectorTypeError, match="undefined"):
        await _executor(resolver).execute(_step("(c) => c.nothing"), {}, _echo)


@pytest.mark.asyncio
async def test_selector_expression_errors_propagate(resolver):
    with pytest.raises(ResolutionError):
        await _executor(resolver).execute(_step("(c) => c.a.b"), {}, _echo)


@pytest.mark.asyncio
async def test_order_preserved_when_later_items_finish_first(resolver):
    """Output order follows input order, not completion order."""
    items = list(range(8))

    async def invoke(context):
        item = context["currentItem"]
        await asyncio.sleep(0.001 * (len(items) - item))
        return item * 10

    outcome = await _executor(resolver, concurrency=8).execute(_step("(c) => c.items"), {"items": items}, invoke)
    assert outcome.data == [i * 10 for i in items]
    assert [e.current_item for e in outcome.items] == items


@pytest.mark.asyncio
async def test_concurrency_is_bounded(resolver):
    state = {"now": 0, "peak": 0}

    async def invoke(context):
        state["now"] += 1
        state["peak"] = max(state["peak"], state["now"])
        await asyncio.sleep(0.005)
        state["now"] -= 1
        return context["currentItem"]

    await _executor(resolver, concurrency=2).execute(_step("(c) => c.items"), {"items": list(range(6))}, invoke)
    assert state["peak"] == 2


@pytest.mark.asyncio
async def test_element_failure_does_not_abort_siblings(resolver):
    async def invoke(context):
        if context["currentItem"] == 2:
            raise ConnectorError("HTTP 500 Internal Server Error: boom")
        return context["currentItem"]

    outcome = await _executor(resolver).execute(_step("(c) => c.items"), {"items": [1, 2, 3]}, invoke)
    assert [e.success for e in outcome.items] == [True, False, True]
    assert "boom" in outcome.items[1].error
    assert outcome.items[1].current_item == 2
    assert len(outcome.failures) == 1
