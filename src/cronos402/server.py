"""
HTTP surface: the MCP relay and the facilitator-fronting payment endpoints.

Routes:
    GET|POST|OPTIONS /api/mcp-proxy          relay to ?target-url=<base64>
    POST /api/payment/usdc/submit            verify + settle a signed authorization
    GET  /api/payment/facilitator/health     facilitator liveness
    GET  /api/payment/facilitator/supported  settleable networks and tokens
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from . import __version__
from .auth import RemoteSessionProvider, SessionProvider
from .authorization import SignedTransferAuthorization, verify_authorization
from .config import Settings
from .facilitator import FacilitatorClient
from .networks import NETWORKS, get_network, is_network_supported
from .relay import McpRelay
from .settlement import HEALTH_PATH, SUBMIT_PATH, SUPPORTED_PATH, SettlementStatus

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/mcp-proxy"


def _failure(status_code: int, error: str, reason: Optional[str] = None) -> JSONResponse:
    body = {"success": False, "error": error}
    if reason:
        body["reason"] = reason
    return JSONResponse(body, status_code=status_code)


def supported_networks_payload() -> list[dict]:
    out = []
    for cfg in NETWORKS.values():
        out.append({
            "network": cfg.id,
            "x402Network": cfg.x402_name,
            "chainId": cfg.chain_id,
            "tokens": [
                {"address": t.address, "symbol": t.symbol, "decimals": t.decimals}
                for t in cfg.tokens
                if t.is_stablecoin
            ],
        })
    return out


def create_app(
    settings: Optional[Settings] = None,
    session_provider: Optional[SessionProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    facilitator: Optional[FacilitatorClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    session_provider = session_provider or RemoteSessionProvider(settings.auth_url)
    relay = McpRelay(session_provider, settings, http_client=http_client)
    facilitator = facilitator or FacilitatorClient(
        settings.facilitator_url, timeout=settings.facilitator_timeout
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if http_client is None:
            await relay.aclose()
        await facilitator.aclose()

    app = FastAPI(title="cronos402", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.relay = relay
    app.state.facilitator = facilitator

    @app.api_route(PROXY_PATH, methods=["GET", "POST"])
    async def mcp_proxy(request: Request) -> Response:
        return await relay.handle(request)

    @app.options(PROXY_PATH)
    async def mcp_proxy_preflight(request: Request) -> Response:
        return relay.preflight(request)

    @app.post(SUBMIT_PATH)
    async def submit_usdc_payment(request: Request) -> Response:
        try:
            data = await request.json()
        except ValueError:
            return _failure(400, "Invalid request", "Body must be JSON")
        if not isinstance(data, dict):
            return _failure(400, "Invalid request", "Body must be a JSON object")

        network = data.get("network")
        if not isinstance(network, str) or not is_network_supported(network):
            return _failure(400, "Unsupported network", f"Unknown network: {network!r}")

        try:
            signed = SignedTransferAuthorization.from_wire(data.get("authorization"), network)
        except ValueError as e:
            return _failure(400, "Invalid authorization", str(e))

        ok, reason = verify_authorization(signed)
        if not ok:
            logger.info("Rejected authorization %s: %s", signed.nonce, reason)
            return _failure(400, "Invalid authorization", reason)

        result = await facilitator.settle(signed, get_network(network))
        if result.success:
            status_code = 200
        elif result.status == SettlementStatus.REJECTED:
            status_code = 400
        else:
            status_code = 502
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.get(HEALTH_PATH)
    async def facilitator_health() -> dict:
        status = await facilitator.health(settings.default_network)
        return status.to_dict()

    @app.get(SUPPORTED_PATH)
    async def facilitator_supported() -> dict:
        return {
            "networks": supported_networks_payload(),
            "facilitator": await facilitator.supported(settings.default_network),
        }

    return app
