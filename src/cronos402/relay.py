"""
MCP relay.

Forwards streamable-HTTP MCP traffic from the browser to an arbitrary
upstream tool server. Per request:

1. Authenticate the caller session (401 otherwise).
2. Decode the base64 ``target-url`` query parameter (400 if missing/invalid).
3. Peek the JSON-RPC method to spot ``initialize``.
4. Apply the session-id policy: strip it for initialize, synthesize one
   when absent on anything else.
5. Translate headers (drop hop-by-hop, forward cookie, default Accept and
   Content-Type).
6. Forward the buffered body and stream the upstream response back
   untouched, including its Content-Encoding, with CORS headers.

No state is kept between requests; the session id lives only in headers.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import uuid
from http.cookiejar import CookiePolicy
from typing import AsyncIterator, Iterable, Mapping, Optional
from urllib.parse import unquote, urlsplit

import httpx
from fastapi import BackgroundTasks, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from .auth import SessionProvider
from .config import Settings
from .errors import InvalidTargetError

logger = logging.getLogger(__name__)

SESSION_HEADER = "MCP-Session-Id"
DEFAULT_ACCEPT = "application/json, text/event-stream"
DEFAULT_CONTENT_TYPE = "application/json"

HOP_BY_HOP_HEADERS = frozenset(
    {"host", "connection", "content-length", "transfer-encoding", "content-encoding"}
)

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = (
    "Content-Type, Authorization, X-Wallet-Type, X-Wallet-Address, X-Wallet-Provider, "
    "MCP-Session-Id, mcp-session-id, x-api-key, WWW-Authenticate"
)
EXPOSE_HEADERS = "MCP-Session-Id, WWW-Authenticate, Content-Encoding"

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})

_TARGET_PARAM_RE = re.compile(r"(?:^|&)target-url=([^&]+)")
_B64_RE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")


# ── Target resolution ─────────────────────────────────────────────


def extract_target_param(query_string: str) -> Optional[str]:
    """Read ``target-url`` from the raw query string.

    Percent-decoding only; a ``+`` in base64 must not turn into a space.
    """
    match = _TARGET_PARAM_RE.search(query_string.lstrip("?"))
    if not match:
        return None
    return unquote(match.group(1)) or None


def _is_absolute_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _b64decode(raw: str) -> Optional[str]:
    candidate = raw.strip()
    if not _B64_RE.match(candidate):
        return None
    candidate = candidate.rstrip("=")
    candidate += "=" * (-len(candidate) % 4)
    try:
        if "-" in candidate or "_" in candidate:
            data = base64.urlsafe_b64decode(candidate)
        else:
            data = base64.b64decode(candidate, validate=True)
        return data.decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None


def decode_target_url(raw: Optional[str]) -> str:
    """Base64 URL first, plain URL as fallback."""
    if not raw:
        raise InvalidTargetError("target-url parameter is required")
    decoded = _b64decode(raw)
    if decoded is not None and _is_absolute_http_url(decoded):
        return decoded
    if _is_absolute_http_url(raw):
        return raw
    raise InvalidTargetError("Invalid target-url parameter")


def encode_target_url(url: str) -> str:
    return base64.b64encode(url.encode("utf-8")).decode("ascii")


# ── Request classification and headers ────────────────────────────


def is_initialize_request(body: Optional[bytes]) -> bool:
    if not body:
        return False
    try:
        message = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return False
    if isinstance(message, list):
        return any(isinstance(m, dict) and m.get("method") == "initialize" for m in message)
    return isinstance(message, dict) and message.get("method") == "initialize"


def build_forward_headers(
    headers: Iterable[tuple[str, str]],
    method: str,
    cookie: Optional[str] = None,
    is_initialize: bool = False,
) -> httpx.Headers:
    """Headers for the upstream request, with the session-id policy applied."""
    out = httpx.Headers()
    for key, value in headers:
        if key.lower() in HOP_BY_HOP_HEADERS:
            continue
        out[key] = value

    if cookie:
        out["Cookie"] = cookie
    if "accept" not in out:
        out["Accept"] = DEFAULT_ACCEPT
    if method == "POST" and "content-type" not in out:
        out["Content-Type"] = DEFAULT_CONTENT_TYPE

    if is_initialize:
        if SESSION_HEADER in out:
            del out[SESSION_HEADER]
    elif SESSION_HEADER not in out:
        out[SESSION_HEADER] = str(uuid.uuid4())
    return out


# ── CORS ──────────────────────────────────────────────────────────


def _request_origin(headers: Mapping[str, str]) -> Optional[str]:
    origin = headers.get("origin")
    if origin:
        return origin.rstrip("/")
    referer = headers.get("referer")
    if not referer:
        return None
    try:
        parts = urlsplit(referer)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def _is_local_origin(origin: str) -> bool:
    try:
        parts = urlsplit(origin)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and parts.hostname in LOCAL_HOSTS


def resolve_cors_origin(headers: Mapping[str, str], settings: Settings) -> Optional[str]:
    """Origin to echo back, or None when it is not on the allow-list."""
    origin = _request_origin(headers)
    if not origin:
        return None
    if origin in settings.allowed_origins:
        return origin
    if not settings.is_production and _is_local_origin(origin):
        return origin
    return None


def cors_headers(origin: Optional[str], expose: bool = True) -> dict[str, str]:
    out = {
        "Access-Control-Allow-Origin": origin or "*",
        "Access-Control-Allow-Methods": ALLOW_METHODS,
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
        "Access-Control-Allow-Credentials": "true" if origin else "false",
    }
    if expose:
        out["Access-Control-Expose-Headers"] = EXPOSE_HEADERS
    if origin:
        out["Vary"] = "Origin"
    return out


# ── Relay ─────────────────────────────────────────────────────────


class _RejectAllCookies(CookiePolicy):
    """Keeps the shared upstream client from storing one caller's cookies for the next."""

    netscape = True
    rfc2965 = False
    hide_cookie2 = False

    def set_ok(self, cookie, request):
        return False

    def return_ok(self, cookie, request):
        return False

    def domain_return_ok(self, domain, request):
        return False

    def path_return_ok(self, path, request):
        return False


def stateless_client(timeout: float) -> httpx.AsyncClient:
    """httpx client for upstream calls: no cookie jar, no redirects, explicit timeouts."""
    client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0), follow_redirects=False)
    client.cookies.jar.set_policy(_RejectAllCookies())
    return client


async def _stream_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    if upstream.is_stream_consumed:
        yield upstream.content
        return
    async for chunk in upstream.aiter_raw():
        yield chunk


def _closer(upstream: httpx.Response) -> BackgroundTasks:
    # runs after the body is sent or the client goes away
    tasks = BackgroundTasks()
    tasks.add_task(upstream.aclose)
    return tasks


class McpRelay:
    """Handles ``/api/mcp-proxy`` requests."""

    def __init__(
        self,
        session_provider: SessionProvider,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.sessions = session_provider
        self.settings = settings
        self._http = http_client or stateless_client(settings.upstream_timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _timeout(self, method: str) -> httpx.Timeout:
        # GET carries the server-to-client event stream, which may idle.
        read = None if method == "GET" else self.settings.upstream_timeout
        return httpx.Timeout(self.settings.upstream_timeout, connect=10.0, read=read)

    def preflight(self, request: Request) -> Response:
        origin = resolve_cors_origin(request.headers, self.settings)
        headers = cors_headers(origin, expose=False)
        headers["Content-Type"] = DEFAULT_ACCEPT
        return Response(status_code=200, headers=headers)

    async def handle(self, request: Request) -> Response:
        method = request.method.upper()

        session = await self.sessions.get_session(request.headers)
        if session is None:
            return PlainTextResponse("Unauthorized", status_code=401)

        raw_target = extract_target_param(request.url.query)
        if not raw_target:
            return PlainTextResponse("target-url parameter is required", status_code=400)
        try:
            target = decode_target_url(raw_target)
        except InvalidTargetError as e:
            logger.info("Rejected target-url %r: %s", raw_target[:50], e)
            return PlainTextResponse("Invalid target-url parameter", status_code=400)

        body: Optional[bytes] = None
        if method == "POST":
            body = await request.body()
        is_initialize = method == "POST" and is_initialize_request(body)

        forward_headers = build_forward_headers(
            request.headers.items(),
            method=method,
            cookie=request.headers.get("cookie"),
            is_initialize=is_initialize,
        )
        logger.debug(
            "Relaying %s to %s (initialize=%s, session=%s)",
            method,
            target,
            is_initialize,
            forward_headers.get(SESSION_HEADER),
        )

        upstream_request = self._http.build_request(
            method,
            target,
            headers=forward_headers,
            content=body if method == "POST" else None,
            timeout=self._timeout(method),
        )
        origin = resolve_cors_origin(request.headers, self.settings)
        try:
            upstream = await self._http.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Upstream %s unreachable: %s", target, e)
            return PlainTextResponse(
                "Upstream request failed", status_code=502, headers=cors_headers(origin)
            )

        logger.info("Upstream %s responded %d", target, upstream.status_code)
        return StreamingResponse(
            _stream_body(upstream),
            status_code=upstream.status_code,
            headers=self._response_headers(upstream, origin),
            background=_closer(upstream),
        )

    def _response_headers(self, upstream: httpx.Response, origin: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": upstream.headers.get("content-type") or DEFAULT_CONTENT_TYPE}
        headers.update(cors_headers(origin))
        encoding = upstream.headers.get("content-encoding")
        if encoding:
            headers["Content-Encoding"] = encoding
        session_id = upstream.headers.get(SESSION_HEADER)
        if session_id:
            headers[SESSION_HEADER] = session_id
        www_authenticate = upstream.headers.get("www-authenticate")
        if www_authenticate:
            headers["WWW-Authenticate"] = www_authenticate
        return headers
