"""Pagination sub-loop tests: stop rules, merging and injected variables."""

import pytest

from conduit.core.pagination import Paginator, extract_cursor, merge_pages, page_items
from conduit.exceptions import ConnectorError, ExpressionError
from conduit.types import ConnectorResult, PaginationConfig, PaginationType, RunOptions


def _paginator(sandbox, max_pages=50, page_size=2, **config) -> Paginator:
    return Paginator(PaginationConfig(**config), page_size, sandbox, max_pages)


def _pages(*pages):
    """Fetch function answering successive pages and recording the variables it saw."""
    seen = []

    async def fetch(variables):
        seen.append(dict(variables))
        index = len(seen) - 1
        data = pages[index] if index < len(pages) else []
        return ConnectorResult(success=True, data=data, status_code=200, headers={"x-page": str(index + 1)})

    return fetch, seen


# ── Stop rules ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_page_based_stops_on_short_page(sandbox):
    fetch, seen = _pages([1, 2], [3, 4], [5])
    result = await _paginator(sandbox, type="pageBased").run(fetch)
    assert result == [1, 2, 3, 4, 5]
    assert [v["page"] for v in seen] == [1, 2, 3]


@pytest.mark.asyncio
async def test_offset_based_advances_offset(sandbox):
    fetch, seen = _pages([1, 2], [3, 4], [])
    result = await _paginator(sandbox, type="offsetBased").run(fetch)
    assert result == [1, 2, 3, 4]
    assert [v["offset"] for v in seen] == [0, 2, 4]
    assert all(v["limit"] == 2 and v["pageSize"] == 2 for v in seen)


@pytest.mark.asyncio
async def test_repeated_page_stops_the_loop(sandbox):
    fetch, seen = _pages([1, 2], [1, 2], [3, 4])
    result = await _paginator(sandbox, type="pageBased").run(fetch)
    assert result == [1, 2]
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_cursor_based_follows_cursor_until_exhausted(sandbox):
    fetch, seen = _pages(
        {"items": [1, 2], "meta": {"next": "c2"}},
        {"items": [3, 4], "meta": {"next": "c3"}},
        {"items": [5, 6], "meta": {"next": None}},
    )
    result = await _paginator(sandbox, type="cursorBased", cursorPath="meta.next").run(fetch)
    assert result["items"] == [1, 2, 3, 4, 5, 6]
    assert [v["cursor"] for v in seen] == [None, "c2", "c3"]


@pytest.mark.asyncio
async def test_unchanged_cursor_stops(sandbox):
    fetch, seen = _pages(
        {"items": [1, 2], "next": "same"},
        {"items": [3, 4], "next": "same"},
        {"items": [5, 6], "next": "other"},
    )
    await _paginator(sandbox, type="cursorBased", cursorPath="next").run(fetch)
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_stop_condition_receives_response_and_page_info(sandbox):
    fetch, seen = _pages(
        {"results": [1, 2], "hasMore": True},
        {"results": [3, 4], "hasMore": False},
        {"results": [5, 6], "hasMore": True},
    )
    paginator = _paginator(
        sandbox,
        type="pageBased",
        stopCondition="(response, pageInfo) => !response.data.hasMore || pageInfo.totalFetched >= 100",
    )
    result = await paginator.run(fetch)
    assert result["results"] == [1, 2, 3, 4]
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_stop_condition_replaces_short_page_rule(sandbox):
    """With a stop condition, a short page alone does not end the loop."""
    fetch, seen = _pages([1], [2], [3], [])
    paginator = _paginator(sandbox, type="pageBased", stopCondition="(response, pageInfo) => pageInfo.page >= 3")
    assert await paginator.run(fetch) == [1, 2, 3]
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_stop_condition_sees_status_and_headers(sandbox):
    fetch, seen = _pages([1, 2], [3, 4], [5, 6])
    paginator = _paginator(
        sandbox, type="pageBased",
        stopCondition="(response) => response.statusCode === 200 && response.headers['x-page'] === '2'",
    )
    assert await paginator.run(fetch) == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_page_ceiling(sandbox):
    async def fetch(variables):
        return ConnectorResult(success=True, data=[variables["page"] * 10, variables["page"] * 10 + 1])

    result = await _paginator(sandbox, max_pages=3, type="pageBased").run(fetch)
    assert result == [10, 11, 20, 21, 30, 31]


@pytest.mark.asyncio
async def test_failed_page_raises_connector_error(sandbox):
    async def fetch(variables):
        if variables["page"] == 2:
            return ConnectorResult(success=False, error="HTTP 503 Service Unavailable: try later", status_code=503)
        return ConnectorResult(success=True, data=[1, 2])

    with pytest.raises(ConnectorError, match="Page 2 failed") as exc_info:
        await _paginator(sandbox, type="pageBased").run(fetch)
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_checkpoint_runs_before_every_page(sandbox):
    fetch, _ = _pages([1, 2], [3])
    ticks = []
    await _paginator(sandbox, type="pageBased").run(fetch, checkpoint=lambda: ticks.append(1))
    assert len(ticks) == 2


# ── Helpers ──────────────────────────────────────────────────────────────────


def test_page_items():
    assert page_items([1, 2]) == [1, 2]
    assert page_items({"total": 3, "data": [1]}) == [1]
    assert page_items({"total": 3}) is None
    assert page_items("text") is None


def test_merge_pages():
    assert merge_pages([]) == []
    assert merge_pages([{"a": 1}]) == {"a": 1}
    assert merge_pages([[1], [2, 3]]) == [1, 2, 3]
    assert merge_pages([{"items": [1], "total": 3}, {"items": [2], "total": 4}]) == {"items": [1, 2], "total": 4}


def test_extract_cursor_uses_jmespath():
    assert extract_cursor({"meta": {"cursors": [{"next": "abc"}]}}, "meta.cursors[0].next") == "abc"
    assert extract_cursor({"a": 1}, None) is None
    with pytest.raises(ExpressionError, match="Invalid cursorPath"):
        extract_cursor({"a": 1}, "meta.[")


def test_legacy_pagination_type_names():
    assert PaginationConfig(type="CURSOR_BASED").type == PaginationType.CURSOR_BASED


# ── Through the engine ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_engine_injects_page_variables(make_engine, connector_factory):
    def handler(inputs):
        offset = int(inputs["query_params"]["offset"])
        return {"records": list(range(offset, min(offset + 3, 7)))}

    connector = connector_factory(handler)
    engine = make_engine(connector)
    tool = {
        "id": "paged",
        "steps": [{
            "id": "list",
            "config": {
                "type": "request",
                "systemId": "api",
                "url": "https://api.example.com/records",
                "queryParams": {"offset": "<<offset>>", "limit": "<<limit>>"},
                "pagination": {"type": "offsetBased", "pageSize": "<<size>>"},
            },
        }],
        "outputTransform": "(c) => c.list.data.records",
    }
    result = await engine.run_tool(tool, {"size": 3})
    assert result.success
    assert result.data == [0, 1, 2, 3, 4, 5, 6]
    assert [c["query_params"] for c in connector.calls] == [
        {"offset": "0", "limit": "3"},
        {"offset": "3", "limit": "3"},
        {"offset": "6", "limit": "3"},
    ]


@pytest.mark.asyncio
async def test_engine_rejects_invalid_page_size(engine):
    tool = {
        "id": "paged",
        "steps": [{
            "id": "list",
            "config": {
                "type": "request",
                "url": "https://api.example.com/records",
                "pagination": {"type": "pageBased", "pageSize": "<<size>>"},
            },
        }],
    }
    result = await engine.run_tool(tool, {"size": "lots"})
    assert not result.success
    assert "pageSize must resolve to a positive integer" in result.error


@pytest.mark.asyncio
async def test_engine_respects_page_ceiling_option(make_engine, connector_factory):
    connector = connector_factory(lambda inputs: [inputs["url"], "filler"])
    engine = make_engine(connector)
    tool = {
        "id": "paged",
        "steps": [{
            "id": "list",
            "config": {
                "type": "request",
                "url": "https://api.example.com/p/<<page>>",
                "pagination": {"type": "pageBased", "pageSize": 2},
            },
        }],
    }
    result = await engine.run_tool(tool, {}, RunOptions(max_pagination_pages=4))
    assert result.success
    assert len(connector.calls) == 4
