"""Post-run notifications.

A run started with ``webhook_url`` reports its outcome when it ends:

  - ``http://`` / ``https://``: POST ``{runId, success, data, error}`` to the URL
  - ``tool:<id>``: hand the run's data to a chain callback that starts tool ``<id>``

Delivery never affects the run's result. Failures are logged and dropped.
"""

import json
import logging
from typing import Any, Optional

import httpx

from conduit.types import RunResult

logger = logging.getLogger(__name__)

TOOL_PREFIX = "tool:"


def webhook_payload(result: RunResult) -> dict[str, Any]:
    return {
        "runId": result.run_id,
        "success": result.success,
        "data": result.data,
        "error": result.error,
    }


def chain_target(webhook_url: str) -> Optional[str]:
    """Tool id named by a ``tool:<id>`` URL, or None for any other URL."""
    if not webhook_url.startswith(TOOL_PREFIX):
        return None
    return webhook_url[len(TOOL_PREFIX):].strip() or None


async def notify_webhook(url: str, result: RunResult, timeout: float = 10.0) -> bool:
    """POST the run outcome to *url*. Returns True on a 2xx answer."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(
                url,
                content=json.dumps(webhook_payload(result), default=str),
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.warning(
            f"[Webhook] {url} answered {exc.response.status_code} for run {result.run_id}"
        )
        return False
    except httpx.HTTPError as exc:
        logger.warning(f"[Webhook] Could not notify {url} for run {result.run_id}: {exc}")
        return False
    logger.debug(f"[Webhook] Notified {url} for run {result.run_id}")
    return True
