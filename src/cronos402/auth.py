"""
Caller sessions for the relay.

The relay only needs one question answered: does this request carry a
valid session? RemoteSessionProvider asks the auth service
(``GET /api/auth/get-session`` with the caller's cookie); any failure
counts as "no session".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

GET_SESSION_PATH = "/api/auth/get-session"


@dataclass(frozen=True)
class Session:
    user_id: str
    email: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


class SessionProvider(Protocol):
    async def get_session(self, headers: Mapping[str, str]) -> Optional[Session]: ...


def _session_from_payload(data: Any) -> Optional[Session]:
    if not isinstance(data, dict):
        return None
    user = data.get("user")
    if not isinstance(user, dict) or not user.get("id"):
        return None
    return Session(user_id=str(user["id"]), email=user.get("email"), raw=data)


class RemoteSessionProvider:
    """Resolves sessions against a Better Auth style endpoint."""

    def __init__(
        self,
        auth_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.auth_url = auth_url.rstrip("/")
        self._http = http_client
        self.timeout = timeout

    async def get_session(self, headers: Mapping[str, str]) -> Optional[Session]:
        cookie = headers.get("cookie") or ""
        if not cookie:
            return None

        url = f"{self.auth_url}{GET_SESSION_PATH}"
        try:
            if self._http is not None:
                response = await self._http.get(url, headers={"cookie": cookie}, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers={"cookie": cookie})
        except httpx.HTTPError as e:
            logger.warning("Session lookup failed: %s", e)
            return None

        if not response.is_success:
            return None
        try:
            return _session_from_payload(response.json())
        except ValueError:
            return None


class StaticSessionProvider:
    """Maps cookie values to sessions. For local development and tests."""

    def __init__(self, sessions: Optional[Mapping[str, Session]] = None, cookie_name: str = "session"):
        self._sessions = dict(sessions or {})
        self.cookie_name = cookie_name

    async def get_session(self, headers: Mapping[str, str]) -> Optional[Session]:
        cookie = headers.get("cookie") or ""
        for part in cookie.split(";"):
            name, _, value = part.strip().partition("=")
            if name == self.cookie_name and value in self._sessions:
                return self._sessions[value]
        return None
