"""
Outbound HTTP for `api_call` steps.

One shared httpx.AsyncClient per process; engines may inject their own
(tests pass one built on httpx.MockTransport).
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import httpx
import structlog

from utils.duration import parse_duration
from utils.errors import ConfigError, TransportError, failure_for_status
from utils.templating import render, render_json, render_value

logger = structlog.get_logger()

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"})
DEFAULT_TIMEOUT = 30.0

_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True)
    return _client


async def close_http_client() -> None:
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
    _client = None


def build_request(params: Mapping[str, Any], state: Mapping[str, Any]) -> dict[str, Any]:
    """Render url, method, headers and body of an api_call step."""
    if not params.get("url"):
        raise ConfigError("missing url parameter")
    url = render(str(params["url"]), state)

    method = render(str(params.get("method") or "GET"), state).upper()
    if method not in ALLOWED_METHODS:
        raise ConfigError(f"unsupported HTTP method: {method}")

    raw_headers = params.get("headers") or {}
    if not isinstance(raw_headers, Mapping):
        raise ConfigError("headers should be an object")
    headers = {
        render(str(k), state): render(str(v), state) for k, v in raw_headers.items()
    }

    content: Optional[bytes] = None
    body = params.get("body")
    if body is not None:
        if isinstance(body, str):
            content = render(body, state).encode("utf-8")
        else:
            content = render_json(body, state)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

    return {"method": method, "url": url, "headers": headers, "content": content}


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    return json.loads(response.content)


async def api_call(
    params: Mapping[str, Any],
    state: Mapping[str, Any],
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    """
    Execute one api_call step.

    Returns the parsed JSON object augmented with `_status_code` and
    `_headers`. Non-object JSON is wrapped as {"data": ...} and a body that is not
    JSON at all as {"body": text}. The result is
    returned even for status >= 400 via TransportError.result so the
    caller can store it before routing to next_on_error.
    """
    request = build_request(params, state)
    if params.get("timeout") is not None:
        timeout = parse_duration(render_value(params["timeout"], state))
    client = client or get_http_client()

    try:
        response = await client.request(
            request["method"], request["url"],
            headers=request["headers"], content=request["content"],
            timeout=timeout,
        )
    except httpx.TimeoutException as e:
        raise TransportError(f"{request['method']} {request['url']} timed out", "transient") from e
    except httpx.HTTPError as e:
        raise TransportError(f"{request['method']} {request['url']} failed: {e}", "transient") from e

    status = response.status_code
    try:
        parsed = _parse_body(response)
    except ValueError:
        parsed = {"body": response.text}

    result = dict(parsed) if isinstance(parsed, dict) else {"data": parsed}
    result["_status_code"] = status
    result["_headers"] = dict(response.headers)

    logger.info("api_call_completed", method=request["method"], url=request["url"], status=status)

    if status >= 400:
        err = TransportError(
            f"HTTP error: {status} - {response.text[:500]}",
            failure_for_status(status), status_code=status,
        )
        err.result = result
        raise err
    return result
