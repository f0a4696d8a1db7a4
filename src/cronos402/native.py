"""
Native CRO payments.

Unlike USDC.e authorizations these are ordinary transactions: the payer's
wallet broadcasts them and pays gas itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from eth_utils import is_address, to_checksum_address

from .errors import (
    InvalidRecipientError,
    NetworkMismatchError,
    SignatureDeclinedError,
    SignerUnavailableError,
    WalletNotConnectedError,
)
from .money import parse_units
from .networks import NetworkConfig, explorer_url, get_native_token, get_network
from .signer import SigningContext

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 21000


@dataclass
class NativePaymentResult:
    tx_hash: str
    from_address: str
    to_address: str
    value: int
    chain_id: int
    explorer_url: str

    def to_dict(self) -> dict:
        return {
            "txHash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "chainId": self.chain_id,
            "explorerUrl": self.explorer_url,
        }


async def send_native_payment(
    context: Optional[SigningContext],
    recipient: str,
    amount: str,
    network: Union[str, int, NetworkConfig],
    gas_limit: int = DEFAULT_GAS_LIMIT,
) -> NativePaymentResult:
    """Send ``amount`` of the network's native currency to ``recipient``."""
    if context is None or context.signer is None:
        raise WalletNotConnectedError("No wallet connected. Please connect your wallet first.")

    cfg = get_network(network)
    if context.chain_id != cfg.chain_id:
        raise NetworkMismatchError(cfg.chain_id, context.chain_id)
    if not recipient or not is_address(recipient):
        raise InvalidRecipientError(f"Invalid recipient address: {recipient!r}")

    token = get_native_token(cfg)
    value = parse_units(amount, token.decimals)
    to = to_checksum_address(recipient)

    tx = {
        "to": to,
        "value": value,
        "gas": gas_limit,
        "chainId": cfg.chain_id,
    }
    try:
        tx_hash = await context.signer.send_transaction(tx)
    except (SignatureDeclinedError, SignerUnavailableError):
        raise
    except Exception as e:
        raise SignerUnavailableError(f"Transaction failed: {type(e).__name__}: {e}") from e

    logger.info("Sent %s %s to %s: %s", amount, token.symbol, to, tx_hash)
    return NativePaymentResult(
        tx_hash=tx_hash,
        from_address=to_checksum_address(context.address),
        to_address=to,
        value=value,
        chain_id=cfg.chain_id,
        explorer_url=explorer_url(cfg, tx_hash, "tx"),
    )
