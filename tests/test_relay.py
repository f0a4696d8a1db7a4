"""Tests for the MCP relay: helpers and the /api/mcp-proxy route."""

import gzip
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from cronos402.auth import Session, StaticSessionProvider
from cronos402.config import DEVELOPMENT, Settings
from cronos402.errors import InvalidTargetError
from cronos402.facilitator import FacilitatorClient
from cronos402.relay import (
    DEFAULT_ACCEPT,
    SESSION_HEADER,
    _closer,
    build_forward_headers,
    decode_target_url,
    encode_target_url,
    extract_target_param,
    is_initialize_request,
    resolve_cors_origin,
)
from cronos402.server import PROXY_PATH, create_app

TARGET = "https://tools.example/mcp"
COOKIE = "session=tok-1"
INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
TOOLS_LIST = {"jsonrpc": "2.0", "id": 2, "method": "tools/list"}


class TestTargetUrl:
    def test_extract_keeps_plus(self):
        assert extract_target_param("target-url=ab+c%3D%3D&x=1") == "ab+c=="

    def test_extract_not_first(self):
        assert extract_target_param("a=1&target-url=xyz") == "xyz"

    def test_extract_missing(self):
        assert extract_target_param("other-target-url=xyz") is None
        assert extract_target_param("") is None

    def test_base64_roundtrip(self):
        assert decode_target_url(encode_target_url(TARGET)) == TARGET

    def test_plain_url_fallback(self):
        assert decode_target_url("http://localhost:8080/mcp") == "http://localhost:8080/mcp"

    @pytest.mark.parametrize("raw", ["", None])
    def test_required(self, raw):
        with pytest.raises(InvalidTargetError, match="required"):
            decode_target_url(raw)

    @pytest.mark.parametrize("raw", ["not base64 !!", encode_target_url("ftp://files.example"), "relative/path"])
    def test_invalid(self, raw):
        with pytest.raises(InvalidTargetError, match="Invalid"):
            decode_target_url(raw)


class TestClassification:
    def test_initialize(self):
        assert is_initialize_request(json.dumps(INITIALIZE).encode())

    def test_batch_with_initialize(self):
        assert is_initialize_request(json.dumps([TOOLS_LIST, INITIALIZE]).encode())

    def test_other_methods(self):
        assert not is_initialize_request(json.dumps(TOOLS_LIST).encode())
        assert not is_initialize_request(b"")
        assert not is_initialize_request(b"{not json")


class TestForwardHeaders:
    def test_drops_hop_by_hop(self):
        headers = build_forward_headers(
            [("Host", "proxy"), ("Connection", "keep-alive"), ("Content-Length", "10"), ("X-Api-Key", "k")],
            "POST",
        )
        assert "host" not in headers
        assert "connection" not in headers
        assert "content-length" not in headers
        assert headers["x-api-key"] == "k"

    def test_defaults(self):
        headers = build_forward_headers([], "POST")
        assert headers["accept"] == DEFAULT_ACCEPT
        assert headers["content-type"] == "application/json"

    def test_get_has_no_default_content_type(self):
        assert "content-type" not in build_forward_headers([], "GET")

    def test_initialize_strips_session(self):
        headers = build_forward_headers([(SESSION_HEADER, "stale")], "POST", is_initialize=True)
        assert SESSION_HEADER not in headers

    def test_synthesizes_single_session(self):
        headers = build_forward_headers([], "POST")
        assert len(headers.get_list(SESSION_HEADER)) == 1

    def test_keeps_existing_session(self):
        headers = build_forward_headers([("mcp-session-id", "abc")], "POST")
        assert headers.get_list(SESSION_HEADER) == ["abc"]

    def test_forwards_cookie(self):
        headers = build_forward_headers([], "GET", cookie=COOKIE)
        assert headers["cookie"] == COOKIE


class TestCors:
    def test_production_allow_list(self):
        settings = Settings()
        assert resolve_cors_origin({"origin": "https://cronos402.tech"}, settings) == "https://cronos402.tech"
        assert resolve_cors_origin({"origin": "http://localhost:3000"}, settings) is None

    def test_development_allows_local(self):
        settings = Settings(environment=DEVELOPMENT)
        assert resolve_cors_origin({"origin": "http://localhost:3000"}, settings) == "http://localhost:3000"
        assert resolve_cors_origin({"origin": "http://127.0.0.1"}, settings) == "http://127.0.0.1"
        assert resolve_cors_origin({"origin": "https://evil.example"}, settings) is None

    def test_referer_fallback(self):
        origin = resolve_cors_origin({"referer": "https://www.cronos402.tech/app?x=1"}, Settings())
        assert origin == "https://www.cronos402.tech"


class _Body(httpx.AsyncByteStream):
    """Unread upstream body, so the relay streams it the way a live response would be."""

    def __init__(self, data: bytes):
        self.data = data
        self.closed = False

    async def __aiter__(self):
        yield self.data

    async def aclose(self):
        self.closed = True


def _reply(status=200, content=b"", headers=None, json_body=None):
    headers = dict(headers or {})
    if json_body is not None:
        content = json.dumps(json_body).encode()
        headers.setdefault("content-type", "application/json")
    return status, content, headers


class Upstream:
    """Records forwarded requests and replies with a fresh streamed response each time."""

    def __init__(self, reply=None, error=None):
        self.requests = []
        self.bodies = []
        self.reply = reply or _reply(json_body={"jsonrpc": "2.0", "id": 1, "result": {}})
        self.error = error

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status, content, headers = self.reply
        body = _Body(content)
        self.bodies.append(body)
        return httpx.Response(status, headers=headers, stream=body)


def _app(upstream, settings=None):
    return create_app(
        settings=settings or Settings(),
        session_provider=StaticSessionProvider({"tok-1": Session(user_id="user-1")}),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        facilitator=FacilitatorClient(
            "https://facilitator.test", http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        ),
    )


def _proxy_url(target=TARGET):
    return f"{PROXY_PATH}?target-url={encode_target_url(target)}"


class TestProxyRoute:
    def test_requires_session(self):
        upstream = Upstream()
        client = TestClient(_app(upstream))
        response = client.post(_proxy_url(), json=TOOLS_LIST)
        assert response.status_code == 401
        assert upstream.requests == []

    def test_unknown_session_cookie(self):
        upstream = Upstream()
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": "session=nope"})
        assert response.status_code == 401

    def test_missing_target(self):
        response = TestClient(_app(Upstream())).post(PROXY_PATH, json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.status_code == 400
        assert response.text == "target-url parameter is required"

    def test_invalid_target(self):
        response = TestClient(_app(Upstream())).post(
            f"{PROXY_PATH}?target-url=%25%25%25", json=TOOLS_LIST, headers={"cookie": COOKIE}
        )
        assert response.status_code == 400
        assert response.text == "Invalid target-url parameter"

    def test_forwards_body_and_cookie(self):
        upstream = Upstream()
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.status_code == 200
        assert response.json() == {"jsonrpc": "2.0", "id": 1, "result": {}}
        sent = upstream.requests[0]
        assert str(sent.url) == TARGET
        assert json.loads(sent.content) == TOOLS_LIST
        assert sent.headers["cookie"] == COOKIE
        assert sent.headers["accept"] == DEFAULT_ACCEPT

    def test_plain_target_url(self):
        upstream = Upstream()
        TestClient(_app(upstream)).post(
            f"{PROXY_PATH}?target-url=http://localhost:9000/mcp", json=TOOLS_LIST, headers={"cookie": COOKIE}
        )
        assert str(upstream.requests[0].url) == "http://localhost:9000/mcp"

    def test_initialize_has_no_session_id(self):
        upstream = Upstream()
        TestClient(_app(upstream)).post(
            _proxy_url(), json=INITIALIZE, headers={"cookie": COOKIE, SESSION_HEADER: "stale"}
        )
        assert SESSION_HEADER not in upstream.requests[0].headers

    def test_non_initialize_gets_one_session_id(self):
        upstream = Upstream()
        TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert len(upstream.requests[0].headers.get_list(SESSION_HEADER)) == 1

    def test_existing_session_id_preserved(self):
        upstream = Upstream()
        TestClient(_app(upstream)).post(
            _proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE, SESSION_HEADER: "sess-42"}
        )
        assert upstream.requests[0].headers.get_list(SESSION_HEADER) == ["sess-42"]

    def test_get_stream(self):
        upstream = Upstream(
            _reply(200, b"event: message\ndata: {}\n\n", headers={"content-type": "text/event-stream"})
        )
        response = TestClient(_app(upstream)).get(_proxy_url(), headers={"cookie": COOKIE})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "data: {}" in response.text
        assert upstream.requests[0].method == "GET"
        assert upstream.requests[0].content == b""

    def test_status_passthrough(self):
        upstream = Upstream(_reply(404, json_body={"error": "no such tool server"}))
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.status_code == 404
        assert response.json() == {"error": "no such tool server"}

    def test_upstream_headers_surface(self):
        upstream = Upstream(
            _reply(
                401,
                json_body={"error": "auth"},
                headers={SESSION_HEADER: "upstream-sess", "WWW-Authenticate": 'Bearer realm="tools"'},
            )
        )
        response = TestClient(_app(upstream)).post(_proxy_url(), json=INITIALIZE, headers={"cookie": COOKIE})
        assert response.headers[SESSION_HEADER] == "upstream-sess"
        assert response.headers["www-authenticate"] == 'Bearer realm="tools"'

    def test_compressed_body_untouched(self):
        payload = {"jsonrpc": "2.0", "id": 2, "result": {"tools": []}}
        compressed = gzip.compress(json.dumps(payload).encode())
        upstream = Upstream(
            _reply(
                200,
                compressed,
                headers={"content-type": "application/json", "content-encoding": "gzip"},
            )
        )
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.headers["content-encoding"] == "gzip"
        assert response.json() == payload

    def test_upstream_response_closed(self):
        upstream = Upstream()
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.status_code == 200
        assert upstream.bodies[0].closed

    @pytest.mark.asyncio
    async def test_unread_upstream_closed_by_background_task(self):
        body = _Body(b"{}")
        await _closer(httpx.Response(200, stream=body))()
        assert body.closed

    def test_upstream_unreachable(self):
        upstream = Upstream(error=httpx.ConnectError("refused"))
        response = TestClient(_app(upstream)).post(_proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE})
        assert response.status_code == 502
        assert response.text == "Upstream request failed"

    def test_cors_allowed_origin(self):
        response = TestClient(_app(Upstream())).post(
            _proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE, "origin": "https://cronos402.tech"}
        )
        assert response.headers["access-control-allow-origin"] == "https://cronos402.tech"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert SESSION_HEADER in response.headers["access-control-expose-headers"]

    def test_cors_unknown_origin(self):
        response = TestClient(_app(Upstream())).post(
            _proxy_url(), json=TOOLS_LIST, headers={"cookie": COOKIE, "origin": "https://evil.example"}
        )
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-credentials"] == "false"

    def test_preflight_does_not_touch_upstream(self):
        upstream = Upstream()
        response = TestClient(_app(upstream, Settings(environment=DEVELOPMENT))).options(
            _proxy_url(), headers={"origin": "http://localhost:3000"}
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert SESSION_HEADER in response.headers["access-control-allow-headers"]
        assert upstream.requests == []
