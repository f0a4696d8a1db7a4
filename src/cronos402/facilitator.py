"""
Cronos x402 facilitator client.

Used by the gateway behind ``/api/payment/usdc/submit``: the facilitator
checks a signed EIP-3009 authorization and executes transferWithAuthorization
on-chain, paying gas itself.

Endpoints (relative to the facilitator URL):
    POST /verify       check a payment header against requirements
    POST /settle       execute the transfer
    GET  /healthcheck  liveness
    GET  /supported    supported schemes and networks
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Union

import httpx

from .authorization import X402_VERSION, SignedTransferAuthorization, encode_payment_header
from .networks import NetworkConfig, explorer_url, get_network, get_stablecoin
from .settlement import NETWORK_ERROR, HealthStatus, SettlementResult, SettlementStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_TIMEOUT_SECONDS = 300


def payment_requirements(
    signed: SignedTransferAuthorization,
    network: Union[str, int, NetworkConfig, None] = None,
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """x402 v1 "exact" requirements matching a signed authorization."""
    cfg = get_network(network or signed.network)
    token = get_stablecoin(cfg)
    auth = signed.authorization
    return {
        "scheme": "exact",
        "network": cfg.x402_name,
        "payTo": auth.to_address,
        "asset": token.address,
        "maxAmountRequired": str(auth.value),
        "maxTimeoutSeconds": max_timeout_seconds,
        "description": "USDC.e payment",
        "mimeType": "application/json",
        "extra": {"name": token.eip712.name, "version": token.eip712.version},
    }


def _normalize_settle_response(
    payload: Any,
    cfg: NetworkConfig,
    http_status: Optional[int] = None,
) -> SettlementResult:
    if not isinstance(payload, dict):
        return SettlementResult(
            status=SettlementStatus.INVALID,
            error="Invalid response",
            reason="Facilitator response was not a JSON object",
            http_status=http_status,
        )

    tx = (
        payload.get("txHash")
        or payload.get("transaction")
        or payload.get("transactionHash")
        or payload.get("tx")
        or payload.get("hash")
    )
    reason = payload.get("errorReason") or payload.get("reason") or payload.get("error")
    success = payload.get("success")
    if success is None:
        success = payload.get("event") == "payment.settled" or bool(tx and not reason)

    if success and tx:
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            tx_hash=tx,
            network=cfg.id,
            explorer_url=explorer_url(cfg, tx, "tx"),
            message="Payment settled",
            http_status=http_status,
            raw_response=payload,
        )
    return SettlementResult(
        status=SettlementStatus.REJECTED,
        network=cfg.id,
        error="Settlement failed",
        reason=str(reason) if reason else "Facilitator did not return a transaction",
        http_status=http_status,
        raw_response=payload,
    )


class FacilitatorClient:
    """Async client for the Cronos x402 facilitator."""

    def __init__(
        self,
        url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        # explicit override; otherwise each network's registry entry decides
        self.override_url = url.rstrip("/") if url else None
        self._http = http_client
        self._owns_client = http_client is None
        self.timeout = timeout

    def url_for(self, network: Union[str, int, NetworkConfig, None] = None) -> str:
        if self.override_url:
            return self.override_url
        return get_network(network or "mainnet").facilitator_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._owns_client and self._http is not None:
            await self._http.aclose()
            self._http = None

    def _body(self, signed: SignedTransferAuthorization, cfg: NetworkConfig) -> dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "paymentHeader": encode_payment_header(signed),
            "paymentRequirements": payment_requirements(signed, cfg),
        }

    async def _post(self, cfg: NetworkConfig, path: str, body: dict) -> httpx.Response:
        return await self._client().post(
            f"{self.url_for(cfg)}{path}",
            json=body,
            headers={"X402-Version": str(X402_VERSION)},
            timeout=self.timeout,
        )

    async def verify(
        self,
        signed: SignedTransferAuthorization,
        network: Union[str, int, NetworkConfig, None] = None,
    ) -> tuple[bool, str]:
        """Ask the facilitator whether the authorization would settle."""
        cfg = get_network(network or signed.network)
        try:
            response = await self._post(cfg, "/verify", self._body(signed, cfg))
        except httpx.HTTPError as e:
            return False, f"{NETWORK_ERROR}: {e}"
        try:
            data = response.json()
        except ValueError:
            return False, f"HTTP {response.status_code}"
        if not isinstance(data, dict):
            return False, f"HTTP {response.status_code}"
        if response.is_success and data.get("isValid"):
            return True, "Valid payment"
        return False, str(data.get("invalidReason") or data.get("error") or f"HTTP {response.status_code}")

    async def settle(
        self,
        signed: SignedTransferAuthorization,
        network: Union[str, int, NetworkConfig, None] = None,
    ) -> SettlementResult:
        """Execute the transfer. Returns a tagged result; never raises for HTTP failures."""
        cfg = get_network(network or signed.network)
        try:
            response = await self._post(cfg, "/settle", self._body(signed, cfg))
        except httpx.HTTPError as e:
            logger.warning("Facilitator settle failed for nonce %s: %s", signed.nonce, e)
            return SettlementResult.network_error(str(e) or type(e).__name__)

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            data = data if isinstance(data, dict) else {}
            reason = data.get("errorReason") or data.get("reason") or data.get("error")
            logger.info("Facilitator rejected nonce %s (%d): %s", signed.nonce, response.status_code, reason)
            return SettlementResult(
                status=SettlementStatus.REJECTED,
                network=cfg.id,
                error=f"HTTP {response.status_code}" if not reason else "Settlement failed",
                reason=str(reason) if reason else None,
                http_status=response.status_code,
                raw_response=data or None,
            )

        return _normalize_settle_response(data, cfg, response.status_code)

    async def health(self, network: Union[str, int, NetworkConfig, None] = None) -> HealthStatus:
        try:
            response = await self._client().get(f"{self.url_for(network)}/healthcheck", timeout=self.timeout)
        except httpx.HTTPError as e:
            return HealthStatus(healthy=False, status="error", error=str(e) or NETWORK_ERROR)
        now = int(time.time() * 1000)
        if not response.is_success:
            return HealthStatus(
                healthy=False, status="unhealthy", timestamp=now, error=f"HTTP {response.status_code}"
            )
        return HealthStatus(healthy=True, status="healthy", timestamp=now)

    async def supported(self, network: Union[str, int, NetworkConfig, None] = None) -> dict:
        try:
            response = await self._client().get(f"{self.url_for(network)}/supported", timeout=self.timeout)
        except httpx.HTTPError as e:
            return {"error": str(e) or NETWORK_ERROR}
        if not response.is_success:
            return {"error": f"HTTP {response.status_code}"}
        try:
            return response.json()
        except ValueError:
            return {"error": "Invalid response"}
