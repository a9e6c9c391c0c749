import time

import httpx
import pytest

from memagent.errors import HttpStatusError, TransportError, TransportTimeout
from memagent.transport import request_bytes, request_json


def make_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class DripStream(httpx.SyncByteStream):
    """Body that arrives one slow chunk at a time."""

    def __iter__(self):
        for _ in range(20):
            time.sleep(0.02)
            yield b" "


def test_request_json_ok():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["auth"] = request.headers.get("authorization")
        seen["content_type"] = request.headers.get("content-type")
        return httpx.Response(200, json={"ok": True})

    with make_client(handler) as client:
        data = request_json(
            "http://svc.test/api/x",
            method="POST",
            headers={"Authorization": "Bearer t"},
            json={"a": 1},
            client=client,
        )
    assert data == {"ok": True}
    assert seen == {"method": "POST", "auth": "Bearer t", "content_type": "application/json"}


def test_request_json_empty_body_is_none():
    with make_client(lambda r: httpx.Response(204)) as client:
        assert request_json("http://svc.test/x", client=client) is None


def test_request_json_invalid_json():
    with make_client(lambda r: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(TransportError, match="invalid JSON"):
            request_json("http://svc.test/x", client=client)


def test_http_status_error_carries_status_and_truncated_body():
    body = "E" * 5000
    with make_client(lambda r: httpx.Response(503, text=body)) as client:
        with pytest.raises(HttpStatusError) as exc:
            request_json("http://svc.test/x", client=client)
    err = exc.value
    assert err.status == 503
    assert err.reason == "Service Unavailable"
    assert len(err.body) == 2000
    assert str(err).startswith("HTTP 503 Service Unavailable: EEE")
    assert err.url == "http://svc.test/x"


def test_transport_timeout_from_httpx():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with make_client(handler) as client:
        with pytest.raises(TransportTimeout, match="timed out after 1500ms"):
            request_json("http://svc.test/x", timeout_ms=1500, client=client)


def test_connection_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with make_client(handler) as client:
        with pytest.raises(TransportError) as exc:
            request_json("http://svc.test/x", client=client)
    assert not isinstance(exc.value, TransportTimeout)


def test_deadline_covers_body_read():
    with make_client(lambda r: httpx.Response(200, stream=DripStream())) as client:
        t0 = time.monotonic()
        with pytest.raises(TransportTimeout):
            request_bytes("http://svc.test/x", timeout_ms=50, client=client)
    assert time.monotonic() - t0 < 0.4


def test_deadline_covers_slow_response_headers():
    def slow(request):
        time.sleep(0.1)
        return httpx.Response(200, json={"ok": True})

    with make_client(slow) as client:
        with pytest.raises(TransportTimeout, match="timed out after 20ms"):
            request_json("http://svc.test/x", timeout_ms=20, client=client)


def test_request_bytes_returns_content_type():
    def handler(request):
        assert request.url.params["byte_start"] == "0"
        return httpx.Response(200, content=b"line1\nline2", headers={"content-type": "text/plain"})

    with make_client(handler) as client:
        res = request_bytes("http://svc.test/x", params={"byte_start": 0}, client=client)
    assert res.content == b"line1\nline2"
    assert res.content_type == "text/plain"
