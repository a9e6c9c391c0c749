"""
Timeout-bounded HTTP helpers for JSON and binary payloads.

Each call owns its deadline: httpx bounds connect/read/write phases, and the
response body is streamed with the deadline re-checked between chunks, so a
slow-dripping server cannot hold a call past ``timeout_ms``. There are no
retries here; callers decide what a failure means.
"""
import json as jsonlib
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from memagent.errors import BODY_PREVIEW_CHARS, HttpStatusError, TransportError, TransportTimeout
from memagent.logging import logger

DEFAULT_TIMEOUT_MS = 30_000
ASSET_BYTES_TIMEOUT_MS = 45_000


@dataclass
class BytesResponse:
    content: bytes
    content_type: Optional[str]


def _send(
    client: Optional[httpx.Client],
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]],
    json: Any,
    params: Optional[Dict[str, Any]],
    timeout_ms: int,
) -> tuple[httpx.Response, bytes]:
    """Issue one request and read the whole body before the deadline."""
    seconds = max(timeout_ms, 1) / 1000.0
    deadline = time.monotonic() + seconds
    expired = f"{method} {url} timed out after {timeout_ms}ms"
    owns_client = client is None
    http = client or httpx.Client()
    try:
        request = http.build_request(
            method,
            url,
            headers=headers,
            json=json,
            params=params,
            timeout=httpx.Timeout(seconds),
        )
        response = http.send(request, stream=True)
        try:
            # httpx bounds each phase separately; the deadline bounds the whole exchange
            if time.monotonic() > deadline:
                raise TransportTimeout(expired, url=url)
            chunks = []
            for chunk in response.iter_bytes():
                if time.monotonic() > deadline:
                    raise TransportTimeout(expired, url=url)
                chunks.append(chunk)
            return response, b"".join(chunks)
        finally:
            response.close()
    except httpx.TimeoutException as e:
        raise TransportTimeout(expired, url=url) from e
    except httpx.HTTPError as e:
        raise TransportError(f"{method} {url} failed: {e}", url=url) from e
    finally:
        if owns_client:
            http.close()


def _raise_for_status(response: httpx.Response, body: bytes, url: str) -> None:
    if response.is_success:
        return
    text = body[: BODY_PREVIEW_CHARS * 4].decode("utf-8", errors="replace")[:BODY_PREVIEW_CHARS]
    logger.debug(f"HTTP {response.status_code} from {url}")
    raise HttpStatusError(response.status_code, response.reason_phrase, text, url=url)


def request_json(
    url: str,
    *,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    json: Any = None,
    params: Optional[Dict[str, Any]] = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    client: Optional[httpx.Client] = None,
) -> Any:
    """Send a request and decode a JSON response. An empty body decodes to None."""
    response, body = _send(client, method, url, headers=headers, json=json, params=params, timeout_ms=timeout_ms)
    _raise_for_status(response, body, url)
    if not body.strip():
        return None
    try:
        return jsonlib.loads(body)
    except ValueError as e:
        raise TransportError(f"{method} {url} returned invalid JSON: {e}", url=url) from e


def request_bytes(
    url: str,
    *,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    client: Optional[httpx.Client] = None,
) -> BytesResponse:
    """Send a request and return the raw body with its content type."""
    response, body = _send(client, method, url, headers=headers, json=None, params=params, timeout_ms=timeout_ms)
    _raise_for_status(response, body, url)
    return BytesResponse(content=body, content_type=response.headers.get("content-type"))
