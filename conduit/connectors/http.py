"""HTTP(S) connector with retry and a streaming response-size limit."""

import asyncio
import json
import logging
import time
from typing import Any, Optional

import httpx

from conduit.config import config
from conduit.exceptions import ConnectorError
from conduit.types import ConnectorResult, RequestStepConfig

logger = logging.getLogger(__name__)

_ERROR_BODY_PREVIEW = 500


def _parse_response_body(content: bytes, encoding: str = "utf-8") -> Any:
    """JSON when the body parses as JSON, text otherwise."""
    if not content:
        return None
    try:
        return json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return content.decode(encoding, errors="replace")


def _has_header(headers: dict[str, str], name: str) -> bool:
    return any(k.lower() == name.lower() for k in headers)


def build_request_kwargs(headers: dict[str, str], body: Any) -> dict[str, Any]:
    """httpx request kwargs for a resolved body.

    Objects and arrays go out as JSON. Strings are sent raw, labelled JSON
    when they parse as JSON and no content type was given.
    """
    headers = dict(headers)
    request_kwargs: dict[str, Any] = {"headers": headers}
    if body is None or body == "":
        return request_kwargs
    if isinstance(body, (dict, list)):
        request_kwargs["json"] = body
    elif isinstance(body, str):
        if not _has_header(headers, "Content-Type"):
            try:
                json.loads(body)
                headers["Content-Type"] = "application/json"
            except ValueError:
                headers["Content-Type"] = "text/plain"
        request_kwargs["content"] = body.encode()
    else:
        request_kwargs["json"] = body
    return request_kwargs


async def _execute_single(
    method: str,
    url: str,
    query_params: dict,
    client_kwargs: dict,
    request_kwargs: dict,
    size_limit_bytes: int,
) -> tuple:
    """Execute a single HTTP request with streaming size limit enforcement."""
    start = time.monotonic()
    async with httpx.AsyncClient(**client_kwargs) as client:
        # httpx drops query params already in the URL when params={} is passed
        extra = {"params": query_params} if query_params else {}
        async with client.stream(method.upper(), url, **extra, **request_kwargs) as response:
            content = b""
            async for chunk in response.aiter_bytes(8192):
                content += chunk
                if len(content) > size_limit_bytes:
                    raise ConnectorError(
                        f"Response exceeds size limit of {size_limit_bytes} bytes",
                        protocol="http",
                        status_code=response.status_code,
                    )
    elapsed_ms = int((time.monotonic() - start) * 1000)
    return response, content, elapsed_ms


class HttpConnector:
    """Executes request steps against ``http://`` and ``https://`` URLs.

    Retries on the configured status codes (honouring ``Retry-After``) and on
    connection errors, with exponential backoff. A final status >= 400 is
    reported as a failed :class:`ConnectorResult` carrying the parsed body.

    Args:
        timeout_seconds: Per-request timeout. Defaults to ``CONDUIT_HTTP_TIMEOUT_SECONDS``.
        max_retries: Extra attempts after the first. Defaults to ``CONDUIT_HTTP_MAX_RETRIES``.
        retry_on: Status codes that trigger a retry.
        response_size_limit_kb: Streaming cap on the response body.
        client_kwargs: Extra ``httpx.AsyncClient`` arguments (``verify``, ``proxy``...).
    """

    protocols = ("http", "https")

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_on: Optional[list[int]] = None,
        response_size_limit_kb: Optional[int] = None,
        client_kwargs: Optional[dict[str, Any]] = None,
    ):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.http_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else config.http_max_retries
        self.retry_on = list(retry_on if retry_on is not None else config.http_retry_on)
        self.size_limit_bytes = (response_size_limit_kb or config.http_response_size_limit_kb) * 1024
        self.client_kwargs = {"timeout": self.timeout_seconds, **(client_kwargs or {})}

    async def execute(self, step_config: RequestStepConfig, resolved_inputs: dict[str, Any]) -> ConnectorResult:
        method = resolved_inputs.get("method") or step_config.method or "GET"
        url = resolved_inputs["url"]
        query_params = dict(resolved_inputs.get("query_params") or {})
        request_kwargs = build_request_kwargs(resolved_inputs.get("headers") or {}, resolved_inputs.get("body"))

        response, content, elapsed_ms = await self._make_request(method, url, query_params, request_kwargs)
        data = _parse_response_body(content, response.encoding or "utf-8")
        headers = dict(response.headers)
        logger.debug(f"[HTTP] {method} {url} -> {response.status_code} in {elapsed_ms}ms")

        if response.status_code >= 400:
            preview = data if isinstance(data, str) else json.dumps(data)
            if preview and len(preview) > _ERROR_BODY_PREVIEW:
                preview = preview[:_ERROR_BODY_PREVIEW] + "..."
            return ConnectorResult(
                success=False,
                data=data,
                error=f"HTTP {response.status_code} {response.reason_phrase}: {preview}",
                status_code=response.status_code,
                headers=headers,
            )
        return ConnectorResult(success=True, data=data, status_code=response.status_code, headers=headers)

    async def _make_request(self, method: str, url: str, query_params: dict, request_kwargs: dict) -> tuple:
        max_tries = self.max_retries + 1
        last_error = None
        for attempt in range(max_tries):
            try:
                response, content, elapsed_ms = await _execute_single(
                    method, url, query_params, self.client_kwargs, request_kwargs, self.size_limit_bytes
                )
                if response.status_code in self.retry_on and attempt < max_tries - 1:
                    retry_after = response.headers.get("Retry-After")
                    if retry_after:
                        try:
                            sleep_s = float(retry_after)
                        except ValueError:
                            sleep_s = 2 ** attempt
                    else:
                        sleep_s = 2 ** attempt
                    logger.info(f"[HTTP] {response.status_code} from {url}, retrying in {sleep_s}s")
                    await asyncio.sleep(sleep_s)
                    continue
                return response, content, elapsed_ms
            except ConnectorError:
                raise
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout) as e:
                last_error = e
                if attempt == max_tries - 1:
                    raise ConnectorError(
                        f"Connection failed after {max_tries} attempts: {e}", protocol="http"
                    ) from e
                await asyncio.sleep(2 ** attempt)
            except httpx.HTTPError as e:
                raise ConnectorError(f"HTTP request failed: {e}", protocol="http") from e
        raise ConnectorError(f"Request failed after {max_tries} attempts: {last_error}", protocol="http")
