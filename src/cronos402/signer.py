"""
Signing contexts.

A SigningContext is the explicit value passed to the authorization engine:
who is paying, which chain the wallet is on, and the capability that signs.
Nothing here reads wallet state from module globals, so tests can hand the
engine a fake signer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union, runtime_checkable

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from .errors import SignerUnavailableError
from .networks import NetworkConfig, get_network

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    """Signing capability of a wallet.

    ``sign_typed_data`` may suspend until the user approves. A user decline
    must surface as ``SignatureDeclinedError``.
    """

    async def sign_typed_data(self, full_message: dict[str, Any]) -> bytes: ...

    async def send_transaction(self, tx: dict[str, Any]) -> str: ...


@dataclass(frozen=True)
class SigningContext:
    """Connected signing identity: address, chain and signing capability."""
    address: str
    chain_id: int
    signer: Optional[Signer]

    @property
    def can_sign(self) -> bool:
        return self.signer is not None


class LocalAccountSigner:
    """Signer backed by an eth-account LocalAccount.

    Typed data is signed locally. Transactions are signed locally and
    broadcast through the network's JSON-RPC endpoint.
    """

    def __init__(
        self,
        account: LocalAccount,
        rpc_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self._account = account
        self._rpc_url = rpc_url
        self._http = http_client
        self._timeout = timeout

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, full_message: dict[str, Any]) -> bytes:
        signed = self._account.sign_typed_data(full_message=full_message)
        return bytes(signed.signature)

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        if not self._rpc_url:
            raise SignerUnavailableError("No RPC endpoint configured for sending transactions")

        tx = {k: v for k, v in tx.items() if k != "from"}
        if "nonce" not in tx:
            tx["nonce"] = int(
                await self._rpc("eth_getTransactionCount", [self._account.address, "pending"]), 16
            )
        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = int(await self._rpc("eth_gasPrice", []), 16)

        signed = self._account.sign_transaction(tx)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = await self._rpc("eth_sendRawTransaction", [raw])
        logger.info("Broadcast transaction %s", tx_hash)
        return tx_hash

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        if self._http is not None:
            response = await self._http.post(self._rpc_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            err = body["error"]
            raise SignerUnavailableError(f"RPC {method} failed: {err.get('message', err)}")
        return body.get("result")


def from_private_key(
    private_key: str,
    network: Union[str, int, NetworkConfig],
    http_client: Optional[httpx.AsyncClient] = None,
) -> SigningContext:
    """Build a SigningContext for a raw private key on a registry network."""
    cfg = get_network(network)
    account = Account.from_key(private_key)
    signer = LocalAccountSigner(account, rpc_url=cfg.rpc_url, http_client=http_client)
    return SigningContext(
        address=to_checksum_address(account.address),
        chain_id=cfg.chain_id,
        signer=signer,
    )
