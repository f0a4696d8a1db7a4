"""Tests for relay session lookup."""

import httpx
import pytest

from cronos402.auth import GET_SESSION_PATH, RemoteSessionProvider, Session, StaticSessionProvider


def _provider(handler):
    return RemoteSessionProvider(
        "https://auth.example/", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


@pytest.mark.asyncio
async def test_remote_session_forwards_cookie():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, json={"user": {"id": "u-1", "email": "a@example.com"}, "session": {}})

    session = await _provider(handler).get_session({"cookie": "better-auth.session_token=abc"})

    assert session == Session(user_id="u-1", email="a@example.com")
    assert seen["url"] == "https://auth.example" + GET_SESSION_PATH
    assert seen["cookie"] == "better-auth.session_token=abc"


@pytest.mark.asyncio
async def test_remote_session_without_cookie_skips_lookup():
    calls = []
    provider = _provider(lambda request: calls.append(request) or httpx.Response(200, json={}))
    assert await provider.get_session({}) is None
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"error": "unauthorized"}),
        httpx.Response(200, json=None),
        httpx.Response(200, json={"user": {}}),
        httpx.Response(200, text="<html>"),
    ],
)
async def test_remote_session_rejections(response):
    provider = _provider(lambda request: response)
    assert await provider.get_session({"cookie": "x=1"}) is None


@pytest.mark.asyncio
async def test_remote_session_unreachable():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    assert await _provider(handler).get_session({"cookie": "x=1"}) is None


@pytest.mark.asyncio
async def test_static_provider():
    provider = StaticSessionProvider({"tok": Session(user_id="dev")})
    assert (await provider.get_session({"cookie": "theme=dark; session=tok"})).user_id == "dev"
    assert await provider.get_session({"cookie": "session=other"}) is None
