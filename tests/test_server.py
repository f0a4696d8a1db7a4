"""Tests for the payment gateway endpoints."""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import PAYEE, sign_with
from cronos402.auth import StaticSessionProvider
from cronos402.authorization import build_authorization
from cronos402.config import Settings
from cronos402.facilitator import FacilitatorClient
from cronos402.server import create_app
from cronos402.settlement import HEALTH_PATH, SUBMIT_PATH, SUPPORTED_PATH, SettlementSubmitter


class FakeFacilitator:
    """Settles each nonce once, like the token contract would."""

    def __init__(self):
        self.used = set()
        self.calls = []

    def __call__(self, request):
        self.calls.append(request.url.path)
        if request.url.path.endswith("/healthcheck"):
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path.endswith("/supported"):
            return httpx.Response(200, json={"kinds": [{"scheme": "exact", "network": "cronos-testnet"}]})
        body = json.loads(request.content)
        header = json.loads(base64.b64decode(body["paymentHeader"]))
        nonce = header["payload"]["authorization"]["nonce"]
        if nonce in self.used:
            return httpx.Response(400, json={"isValid": False, "errorReason": "authorization_used"})
        self.used.add(nonce)
        return httpx.Response(200, json={"success": True, "txHash": nonce})


@pytest.fixture
def facilitator():
    return FakeFacilitator()


@pytest.fixture
def app(facilitator):
    return create_app(
        settings=Settings(),
        session_provider=StaticSessionProvider(),
        facilitator=FacilitatorClient(
            "https://facilitator.test/v2/x402",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(facilitator)),
        ),
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def _body(signed, network="testnet"):
    return {"network": network, "authorization": signed.to_wire()}


class TestSubmit:
    def test_settles(self, client, signed, facilitator):
        response = client.post(SUBMIT_PATH, json=_body(signed))
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["txHash"].startswith("0x")
        assert data["network"] == "testnet"
        assert data["explorerUrl"] == "https://testnet.cronoscan.com/tx/" + data["txHash"]
        assert facilitator.calls == ["/v2/x402/settle"]

    def test_alias_network(self, client, signed):
        response = client.post(SUBMIT_PATH, json=_body(signed, network="cronos-testnet"))
        assert response.status_code == 200

    def test_unsupported_network(self, client, signed, facilitator):
        response = client.post(SUBMIT_PATH, json=_body(signed, network="base"))
        assert response.status_code == 400
        assert response.json()["error"] == "Unsupported network"
        assert facilitator.calls == []

    def test_malformed_authorization(self, client, signed):
        wire = signed.to_wire()
        del wire["signature"]
        response = client.post(SUBMIT_PATH, json={"network": "testnet", "authorization": wire})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid authorization"

    def test_not_json(self, client):
        response = client.post(SUBMIT_PATH, content=b"nope", headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_forged_signature(self, client, signed, facilitator):
        wire = signed.to_wire()
        wire["value"] = "99000000"
        response = client.post(SUBMIT_PATH, json={"network": "testnet", "authorization": wire})
        assert response.status_code == 400
        assert "mismatch" in response.json()["reason"]
        assert facilitator.calls == []

    def test_wrong_network_domain(self, client, signed):
        # signed for testnet, submitted as mainnet: the domain differs so recovery fails
        response = client.post(SUBMIT_PATH, json=_body(signed, network="mainnet"))
        assert response.status_code == 400

    def test_expired(self, client, context, payer, facilitator):
        auth = build_authorization(PAYEE, "0.01", context, "testnet", validity_window=60, now=1_000)
        response = client.post(SUBMIT_PATH, json=_body(sign_with(payer, auth)))
        assert response.status_code == 400
        assert "expired" in response.json()["reason"]
        assert facilitator.calls == []

    def test_replay_rejected(self, client, signed):
        assert client.post(SUBMIT_PATH, json=_body(signed)).status_code == 200
        second = client.post(SUBMIT_PATH, json=_body(signed))
        assert second.status_code == 400
        assert second.json()["success"] is False
        assert second.json()["reason"] == "authorization_used"

    def test_facilitator_unreachable(self, signed):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        app = create_app(
            settings=Settings(),
            session_provider=StaticSessionProvider(),
            facilitator=FacilitatorClient(
                "https://facilitator.test", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
            ),
        )
        response = TestClient(app).post(SUBMIT_PATH, json=_body(signed))
        assert response.status_code == 502
        assert response.json()["error"] == "Network error"


class TestFacilitatorRoutes:
    def test_health(self, client):
        data = client.get(HEALTH_PATH).json()
        assert data["healthy"] is True
        assert data["status"] == "healthy"
        assert isinstance(data["timestamp"], int)

    def test_supported(self, client):
        data = client.get(SUPPORTED_PATH).json()
        assert [n["network"] for n in data["networks"]] == ["mainnet", "testnet"]
        assert data["networks"][1]["chainId"] == 338
        assert data["networks"][1]["tokens"][0]["decimals"] == 6
        assert data["facilitator"]["kinds"][0]["network"] == "cronos-testnet"


@pytest.mark.asyncio
async def test_submitter_against_gateway(app, context, payer):
    auth = build_authorization(PAYEE, "0.5", context, "testnet")
    signed = sign_with(payer, auth)

    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway")
    async with SettlementSubmitter("http://gateway", http_client=http) as submitter:
        first = await submitter.submit(signed)
        replay = await submitter.submit(signed)
    await http.aclose()

    assert first.success
    assert first.network == "testnet"
    assert not replay.success
    assert replay.reason == "authorization_used"
