"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .networks import DEFAULT_NETWORK
from .settlement import DEFAULT_GATEWAY_URL

CRONOS402_ENV_ENV = "CRONOS402_ENV"
CRONOS402_ALLOWED_ORIGINS_ENV = "CRONOS402_ALLOWED_ORIGINS"
CRONOS402_AUTH_URL_ENV = "CRONOS402_AUTH_URL"
CRONOS402_GATEWAY_URL_ENV = "CRONOS402_GATEWAY_URL"
CRONOS402_FACILITATOR_URL_ENV = "CRONOS402_FACILITATOR_URL"
CRONOS402_UPSTREAM_TIMEOUT_ENV = "CRONOS402_UPSTREAM_TIMEOUT"
CRONOS402_FACILITATOR_TIMEOUT_ENV = "CRONOS402_FACILITATOR_TIMEOUT"
CRONOS402_DEFAULT_NETWORK_ENV = "CRONOS402_DEFAULT_NETWORK"
CRONOS402_PRIVATE_KEY_ENV = "CRONOS402_PRIVATE_KEY"

PRODUCTION = "production"
DEVELOPMENT = "development"

DEFAULT_ALLOWED_ORIGINS = (
    "https://cronos402.tech",
    "https://www.cronos402.tech",
)
DEFAULT_AUTH_URL = "http://localhost:3000"
DEFAULT_UPSTREAM_TIMEOUT = 60.0
DEFAULT_FACILITATOR_TIMEOUT = 30.0


def _split_origins(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_ALLOWED_ORIGINS
    return tuple(o.strip().rstrip("/") for o in raw.split(",") if o.strip())


def _float(raw: Optional[str], default: float, name: str) -> float:
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    environment: str = PRODUCTION
    allowed_origins: tuple[str, ...] = field(default=DEFAULT_ALLOWED_ORIGINS)
    auth_url: str = DEFAULT_AUTH_URL
    gateway_url: str = DEFAULT_GATEWAY_URL
    facilitator_url: Optional[str] = None
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    facilitator_timeout: float = DEFAULT_FACILITATOR_TIMEOUT
    default_network: str = DEFAULT_NETWORK

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        environment = (env.get(CRONOS402_ENV_ENV) or PRODUCTION).strip().lower()
        if environment not in (PRODUCTION, DEVELOPMENT):
            raise ValueError(
                f"{CRONOS402_ENV_ENV} must be '{PRODUCTION}' or '{DEVELOPMENT}', got {environment!r}"
            )
        return cls(
            environment=environment,
            allowed_origins=_split_origins(env.get(CRONOS402_ALLOWED_ORIGINS_ENV)),
            auth_url=(env.get(CRONOS402_AUTH_URL_ENV) or DEFAULT_AUTH_URL).rstrip("/"),
            gateway_url=(env.get(CRONOS402_GATEWAY_URL_ENV) or DEFAULT_GATEWAY_URL).rstrip("/"),
            facilitator_url=env.get(CRONOS402_FACILITATOR_URL_ENV) or None,
            upstream_timeout=_float(
                env.get(CRONOS402_UPSTREAM_TIMEOUT_ENV),
                DEFAULT_UPSTREAM_TIMEOUT,
                CRONOS402_UPSTREAM_TIMEOUT_ENV,
            ),
            facilitator_timeout=_float(
                env.get(CRONOS402_FACILITATOR_TIMEOUT_ENV),
                DEFAULT_FACILITATOR_TIMEOUT,
                CRONOS402_FACILITATOR_TIMEOUT_ENV,
            ),
            default_network=env.get(CRONOS402_DEFAULT_NETWORK_ENV) or DEFAULT_NETWORK,
        )
