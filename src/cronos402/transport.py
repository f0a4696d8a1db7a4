"""
Minimal MCP client over streamable HTTP.

Speaks JSON-RPC 2.0 over POST, accepts either a JSON body or a
``text/event-stream`` reply, and carries the server-assigned
``MCP-Session-Id`` between calls. Point it at the relay with
``proxy_url()`` to route through ``/api/mcp-proxy``.
"""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .errors import McpError
from .relay import DEFAULT_ACCEPT, SESSION_HEADER, encode_target_url

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
PROXY_PATH = "/api/mcp-proxy"
INTERNAL_ERROR = -32603


def proxy_url(relay_base: str, target: str) -> str:
    """Relay URL forwarding to ``target``."""
    encoded = quote(encode_target_url(target), safe="")
    return f"{relay_base.rstrip('/')}{PROXY_PATH}?target-url={encoded}"


def wallet_headers(address: Optional[str] = None, provider: str = "metamask") -> dict[str, str]:
    """Wallet identity hints forwarded to the upstream tool server."""
    if not address:
        return {"X-Wallet-Type": "none", "X-Wallet-Address": "", "X-Wallet-Provider": ""}
    return {
        "X-Wallet-Type": "external",
        "X-Wallet-Address": address,
        "X-Wallet-Provider": provider,
    }


def parse_event_stream(text: str) -> list[Any]:
    """JSON payloads of the ``data:`` events in an SSE body."""
    messages = []
    data_lines: list[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif line == "" and data_lines:
            try:
                messages.append(json.loads("\n".join(data_lines)))
            except ValueError:
                logger.debug("Skipping non-JSON SSE event")
            data_lines = []
    return messages


class McpHttpClient:
    """JSON-RPC client for one MCP server endpoint."""

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        client_name: str = "cronos402",
        client_version: str = "0.1.0",
    ):
        self.url = url
        self.headers = dict(headers or {})
        self._http = http_client
        self._owns_client = http_client is None
        self.timeout = timeout
        self.client_info = {"name": client_name, "version": client_version}
        self.session_id: Optional[str] = None
        self.server_info: Optional[dict] = None
        self._ids = itertools.count(1)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._owns_client and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "McpHttpClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _request_headers(self) -> dict[str, str]:
        headers = {
            **self.headers,
            "Accept": DEFAULT_ACCEPT,
            "Content-Type": "application/json",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, message: dict) -> httpx.Response:
        response = await self._client().post(
            self.url,
            content=json.dumps(message),
            headers=self._request_headers(),
            timeout=self.timeout,
        )
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self.session_id = session_id
        return response

    async def request(self, method: str, params: Optional[dict] = None) -> Any:
        """Send a request and return its ``result``. Raises McpError on JSON-RPC errors."""
        request_id = next(self._ids)
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        response = await self._post(message)
        reply = self._find_reply(response, request_id)
        if reply is None:
            raise McpError(
                INTERNAL_ERROR,
                f"No JSON-RPC response to {method} (HTTP {response.status_code})",
            )
        if "error" in reply:
            err = reply["error"] or {}
            raise McpError(int(err.get("code", INTERNAL_ERROR)), str(err.get("message", "")), err.get("data"))
        return reply.get("result")

    async def notify(self, method: str, params: Optional[dict] = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._post(message)

    def _find_reply(self, response: httpx.Response, request_id: int) -> Optional[dict]:
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            candidates = parse_event_stream(response.text)
        else:
            try:
                body = response.json()
            except ValueError:
                return None
            candidates = body if isinstance(body, list) else [body]
        for message in candidates:
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        return None

    async def initialize(self) -> dict:
        # The server assigns the session on initialize.
        self.session_id = None
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": self.client_info,
            },
        )
        self.server_info = result.get("serverInfo") if isinstance(result, dict) else None
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> list[dict]:
        result = await self.request("tools/list", {})
        return list((result or {}).get("tools", []))

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict] = None,
        meta: Optional[dict] = None,
    ) -> dict:
        params: dict[str, Any] = {"name": name, "arguments": arguments or {}}
        if meta:
            params["_meta"] = meta
        result = await self.request("tools/call", params)
        return result or {}
