"""Pagination sub-loop for request steps.

Each page gets ``page``, ``offset``, ``cursor``, ``limit`` and ``pageSize``
injected into the context. The loop stops on the first of: the stop
condition returning a truthy value, an empty page, a page identical to one
already seen, an exhausted cursor, or the page ceiling.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

import jmespath
from jmespath.exceptions import JMESPathError
from pydantic import BaseModel

from conduit.exceptions import ConnectorError, ExpressionError
from conduit.expressions import ExpressionSandbox, canonical_json
from conduit.expressions.values import truthy
from conduit.types import ConnectorResult, PaginationConfig, PaginationType

logger = logging.getLogger(__name__)

FetchPage = Callable[[dict[str, Any]], Awaitable[ConnectorResult]]


class PageState(BaseModel):
    page: int = 1
    offset: int = 0
    cursor: Any = None
    page_size: int = 50
    total_fetched: int = 0

    def variables(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "offset": self.offset,
            "cursor": self.cursor,
            "limit": self.page_size,
            "pageSize": self.page_size,
        }

    def page_info(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "offset": self.offset,
            "cursor": self.cursor,
            "totalFetched": self.total_fetched,
        }


def page_items(data: Any) -> Optional[list]:
    """The list of records in one page, when one can be identified.

    A bare array is the records. For an object, the first array-valued
    field is taken (``results``, ``data``, ``items``...).
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return None


def merge_pages(pages: list[Any]) -> Any:
    """Arrays are concatenated. Objects are merged key by key with array
    values concatenated and anything else taken from the latest page."""
    if not pages:
        return []
    if len(pages) == 1:
        return pages[0]
    if all(isinstance(p, list) for p in pages):
        return [item for p in pages for item in p]
    if all(isinstance(p, dict) for p in pages):
        merged: dict[str, Any] = {}
        for p in pages:
            for key, value in p.items():
                if isinstance(value, list) and isinstance(merged.get(key), list):
                    merged[key] = merged[key] + value
                else:
                    merged[key] = value
        return merged
    return pages


def extract_cursor(data: Any, cursor_path: Optional[str]) -> Any:
    if not cursor_path:
        return None
    try:
        return jmespath.search(cursor_path, data)
    except JMESPathError as exc:
        raise ExpressionError(
            f"Invalid cursorPath '{cursor_path}': {exc}",
            expression=cursor_path,
        ) from exc


class Paginator:
    """Drives *fetch* page by page and merges the results.

    Args:
        pagination: The step's pagination config.
        page_size: Resolved page size (the config value may be a placeholder).
        sandbox: Evaluates the stop condition.
        max_pages: Hard ceiling on pages fetched.
    """

    def __init__(self, pagination: PaginationConfig, page_size: int, sandbox: ExpressionSandbox, max_pages: int):
        self.pagination = pagination
        self.page_size = max(1, page_size)
        self.sandbox = sandbox
        self.max_pages = max(1, max_pages)

    async def run(self, fetch: FetchPage, checkpoint: Optional[Callable[[], None]] = None) -> Any:
        """Fetch every page and return the merged data.

        Raises:
            ConnectorError: a page request failed.
            ExpressionError: the stop condition or cursor path is broken.
        """
        ptype = self.pagination.type
        state = PageState(page_size=self.page_size)
        pages: list[Any] = []
        seen: set[str] = set()
        fetched = 0

        while True:
            if fetched >= self.max_pages:
                logger.warning(f"[Pagination] stopped at the {self.max_pages} page ceiling")
                break
            if checkpoint:
                checkpoint()
            result = await fetch(state.variables())
            fetched += 1
            if not result.success:
                raise ConnectorError(
                    f"Page {state.page} failed: {result.error}",
                    status_code=result.status_code,
                    details={"page": state.page, "offset": state.offset, "cursor": state.cursor},
                )

            data = result.data
            signature = canonical_json(data)
            if signature in seen:
                logger.debug(f"[Pagination] page {state.page} repeats an earlier page, stopping")
                break
            seen.add(signature)

            items = page_items(data)
            if data is None or (items is not None and not items):
                break
            pages.append(data)
            state.total_fetched += len(items) if items is not None else 1

            if self.pagination.stop_condition:
                response = {"data": data, "headers": result.headers, "statusCode": result.status_code}
                if truthy(self.sandbox.call_function(self.pagination.stop_condition, [response, state.page_info()])):
                    break
            elif items is not None and len(items) < self.page_size:
                break

            if ptype == PaginationType.CURSOR_BASED:
                next_cursor = extract_cursor(data, self.pagination.cursor_path)
                if next_cursor in (None, "") or next_cursor == state.cursor:
                    break
                state.cursor = next_cursor
            state.page += 1
            state.offset += self.page_size

        logger.info(f"[Pagination] {ptype.value}: {fetched} request(s), {state.total_fetched} record(s)")
        return merge_pages(pages)
