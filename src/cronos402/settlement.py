"""
Settlement submission.

Sends a signed authorization to the facilitator-fronting gateway
(``POST /api/payment/usdc/submit``) and turns whatever comes back into a
SettlementResult. Transport failures and HTTP errors become failed results;
nothing expected escapes as an exception.

Submission is not idempotent. After a transport failure, check the payer's
transfer on an explorer instead of resubmitting the same authorization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import httpx

from .authorization import AuthorizationEngine, AuthorizationStatus, SignedTransferAuthorization
from .networks import NetworkConfig, get_network

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://localhost:3050"
SUBMIT_PATH = "/api/payment/usdc/submit"
HEALTH_PATH = "/api/payment/facilitator/health"
SUPPORTED_PATH = "/api/payment/facilitator/supported"

NETWORK_ERROR = "Network error"


class SettlementStatus(str, Enum):
    SETTLED = "settled"
    REJECTED = "rejected"
    NETWORK_ERROR = "network_error"
    INVALID = "invalid"


@dataclass
class SettlementResult:
    status: SettlementStatus
    tx_hash: Optional[str] = None
    network: Optional[str] = None
    explorer_url: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    http_status: Optional[int] = None
    raw_response: Optional[dict] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.status == SettlementStatus.SETTLED

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"success": self.success}
        for key, value in (
            ("txHash", self.tx_hash),
            ("message", self.message),
            ("network", self.network),
            ("explorerUrl", self.explorer_url),
            ("error", self.error),
            ("reason", self.reason),
        ):
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: dict, http_status: Optional[int] = None) -> "SettlementResult":
        """Interpret a gateway response body."""
        success = bool(data.get("success"))
        if success:
            status = SettlementStatus.SETTLED
        else:
            status = SettlementStatus.REJECTED
        return cls(
            status=status,
            tx_hash=data.get("txHash"),
            network=data.get("network"),
            explorer_url=data.get("explorerUrl"),
            message=data.get("message"),
            error=data.get("error") if not success else None,
            reason=data.get("reason") if not success else None,
            http_status=http_status,
            raw_response=data,
        )

    @classmethod
    def network_error(cls, reason: str) -> "SettlementResult":
        return cls(status=SettlementStatus.NETWORK_ERROR, error=NETWORK_ERROR, reason=reason)


@dataclass
class HealthStatus:
    healthy: bool
    status: str
    timestamp: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"healthy": self.healthy, "status": self.status}
        if self.timestamp is not None:
            out["timestamp"] = self.timestamp
        if self.error is not None:
            out["error"] = self.error
        return out


def _network_param(network: Union[str, int, NetworkConfig]) -> str:
    return get_network(network).id


class SettlementSubmitter:
    """Client for the gateway's settlement endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_GATEWAY_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._owns_client = http_client is None
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._owns_client and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "SettlementSubmitter":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def submit(
        self,
        signed: SignedTransferAuthorization,
        network: Union[str, int, NetworkConfig, None] = None,
    ) -> SettlementResult:
        """POST a signed authorization. Never raises for transport or HTTP failures."""
        network_id = _network_param(network or signed.network)
        body = {"network": network_id, "authorization": signed.to_wire()}
        endpoint = f"{self.base_url}{SUBMIT_PATH}"

        try:
            response = await self._client().post(endpoint, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Settlement submission for nonce %s failed: %s", signed.nonce, e)
            return SettlementResult.network_error(str(e) or type(e).__name__)

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = None

        if not response.is_success:
            logger.info("Settlement rejected (%d) for nonce %s", response.status_code, signed.nonce)
            data = data or {}
            return SettlementResult(
                status=SettlementStatus.REJECTED,
                error=data.get("error") or f"HTTP {response.status_code}",
                reason=data.get("reason"),
                http_status=response.status_code,
                raw_response=data or None,
            )

        if data is None:
            return SettlementResult(
                status=SettlementStatus.INVALID,
                error="Invalid response",
                reason="Settlement response was not a JSON object",
                http_status=response.status_code,
            )

        result = SettlementResult.from_dict(data, http_status=response.status_code)
        if result.success:
            logger.info("Settled nonce %s: %s", signed.nonce, result.tx_hash)
        return result

    async def check_health(self) -> HealthStatus:
        """Liveness probe of the facilitator via the gateway."""
        endpoint = f"{self.base_url}{HEALTH_PATH}"
        try:
            response = await self._client().get(endpoint, timeout=self.timeout)
        except httpx.HTTPError as e:
            return HealthStatus(healthy=False, status="error", error=str(e) or NETWORK_ERROR)

        if not response.is_success:
            return HealthStatus(healthy=False, status="unhealthy", error=f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            return HealthStatus(healthy=False, status="unhealthy", error="Invalid response")
        if not isinstance(data, dict):
            return HealthStatus(healthy=False, status="unhealthy", error="Invalid response")
        return HealthStatus(
            healthy=bool(data.get("healthy")),
            status=str(data.get("status", "unknown")),
            timestamp=data.get("timestamp"),
            error=data.get("error"),
        )

    async def supported_networks(self) -> dict:
        """Networks and tokens the facilitator settles. ``{"error": ...}`` on failure."""
        endpoint = f"{self.base_url}{SUPPORTED_PATH}"
        try:
            response = await self._client().get(endpoint, timeout=self.timeout)
        except httpx.HTTPError as e:
            return {"error": str(e) or NETWORK_ERROR}
        if not response.is_success:
            return {"error": f"HTTP {response.status_code}"}
        try:
            return response.json()
        except ValueError:
            return {"error": "Invalid response"}


async def complete_payment(
    engine: AuthorizationEngine,
    submitter: SettlementSubmitter,
    recipient: str,
    amount: str,
    network: Union[str, int, NetworkConfig],
) -> SettlementResult:
    """Sign a fresh authorization and submit it."""
    outcome = await engine.authorize(recipient, amount, network)
    if outcome.status != AuthorizationStatus.SIGNED:
        return SettlementResult(
            status=SettlementStatus.INVALID,
            error="Payment failed",
            reason=outcome.error,
        )
    return await submitter.submit(outcome.signed, network)
