"""
EIP-3009 transfer authorizations.

Flow:
1. build_authorization() turns (recipient, decimal amount, payer, network)
   into an unsigned TransferAuthorization. All input problems are raised
   here, before any wallet prompt.
2. sign_authorization() resolves the token's EIP-712 domain from the
   network registry and asks the payer's signing capability for a
   TransferWithAuthorization signature.
3. verify_authorization() recovers the signer and checks the validity
   window, for servers that accept authorizations from clients.

The facilitator executes the transfer on-chain and pays gas; nothing in
this module touches the network.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import is_address, to_checksum_address

from .errors import (
    AuthorizationError,
    InvalidAmountError,
    InvalidRecipientError,
    NetworkMismatchError,
    SignatureDeclinedError,
    SignerUnavailableError,
    UnsupportedNetworkError,
    WalletNotConnectedError,
)
from .money import parse_units
from .networks import NetworkConfig, get_network, get_stablecoin
from .signer import SigningContext

logger = logging.getLogger(__name__)


DEFAULT_VALIDITY_WINDOW = 3600
X402_VERSION = 1

PRIMARY_TYPE = "TransferWithAuthorization"

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    PRIMARY_TYPE: [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

_TIMESTAMP_BYTES = 8
_RANDOM_BYTES = 24


def generate_nonce(now_ms: Optional[int] = None) -> str:
    """32-byte nonce: 8-byte big-endian millisecond timestamp + 24 random bytes."""
    ts = int(time.time() * 1000) if now_ms is None else now_ms
    prefix = (ts % (1 << 64)).to_bytes(_TIMESTAMP_BYTES, "big")
    return "0x" + (prefix + secrets.token_bytes(_RANDOM_BYTES)).hex()


def nonce_timestamp_ms(nonce: str) -> int:
    """Millisecond timestamp embedded in a nonce."""
    raw = bytes.fromhex(nonce[2:] if nonce.startswith("0x") else nonce)
    return int.from_bytes(raw[:_TIMESTAMP_BYTES], "big")


def _is_bytes32_hex(value: str) -> bool:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 66:
        return False
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class TransferAuthorization:
    """Unsigned EIP-3009 payment intent. Values are atomic units / UNIX seconds."""
    from_address: str
    to_address: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str
    network: str

    def is_valid_at(self, t: Union[int, float]) -> bool:
        return self.valid_after <= t < self.valid_before

    def to_message(self) -> dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "validAfter": self.valid_after,
            "validBefore": self.valid_before,
            "nonce": self.nonce,
        }

    def to_wire(self) -> dict[str, str]:
        """JSON form; integers are decimal strings."""
        return {
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


@dataclass(frozen=True)
class SignedTransferAuthorization:
    """TransferAuthorization plus its typed-data signature. Single use."""
    authorization: TransferAuthorization
    signature: str

    @property
    def from_address(self) -> str:
        return self.authorization.from_address

    @property
    def nonce(self) -> str:
        return self.authorization.nonce

    @property
    def network(self) -> str:
        return self.authorization.network

    def to_wire(self) -> dict[str, str]:
        return {**self.authorization.to_wire(), "signature": self.signature}

    @classmethod
    def from_wire(cls, data: Mapping[str, Any], network: str) -> "SignedTransferAuthorization":
        """Parse the wire form. Raises ValueError on malformed fields."""
        if not isinstance(data, Mapping):
            raise ValueError("authorization must be an object")
        missing = [
            k for k in ("from", "to", "value", "validAfter", "validBefore", "nonce", "signature")
            if data.get(k) in (None, "")
        ]
        if missing:
            raise ValueError(f"authorization missing fields: {', '.join(missing)}")

        for key in ("from", "to"):
            if not is_address(data[key]):
                raise ValueError(f"authorization.{key} is not an address")

        ints = {}
        for key in ("value", "validAfter", "validBefore"):
            raw = data[key]
            if isinstance(raw, bool) or not str(raw).isdigit():
                raise ValueError(f"authorization.{key} must be a non-negative decimal string")
            ints[key] = int(str(raw))

        if not _is_bytes32_hex(data["nonce"]):
            raise ValueError("authorization.nonce must be 32 bytes of 0x-hex")

        signature = str(data["signature"])
        if not signature.startswith("0x"):
            signature = "0x" + signature

        cfg = get_network(network)
        auth = TransferAuthorization(
            from_address=to_checksum_address(data["from"]),
            to_address=to_checksum_address(data["to"]),
            value=ints["value"],
            valid_after=ints["validAfter"],
            valid_before=ints["validBefore"],
            nonce=data["nonce"].lower(),
            network=cfg.id,
        )
        return cls(authorization=auth, signature=signature)


def build_typed_data(authorization: TransferAuthorization) -> dict[str, Any]:
    """Domain, types and message for an authorization. Domain comes from the registry."""
    domain = get_stablecoin(authorization.network).eip712
    return {
        "domain": domain.to_dict(),
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": PRIMARY_TYPE,
        "message": authorization.to_message(),
    }


def build_full_message(authorization: TransferAuthorization) -> dict[str, Any]:
    """Typed data including the EIP712Domain type, as wallets expect it."""
    typed = build_typed_data(authorization)
    return {
        "types": {**typed["types"], "EIP712Domain": EIP712_DOMAIN_TYPE},
        "primaryType": typed["primaryType"],
        "domain": typed["domain"],
        "message": typed["message"],
    }


def build_authorization(
    recipient: str,
    amount: str,
    payer: Optional[SigningContext],
    network: Union[str, int, NetworkConfig],
    validity_window: int = DEFAULT_VALIDITY_WINDOW,
    now: Optional[int] = None,
) -> TransferAuthorization:
    """Build an unsigned authorization for ``amount`` of the network's stablecoin."""
    if payer is None or not payer.can_sign:
        raise WalletNotConnectedError()

    cfg = get_network(network)
    token = get_stablecoin(cfg)

    if payer.chain_id != cfg.chain_id:
        raise NetworkMismatchError(cfg.chain_id, payer.chain_id)

    if not recipient or not is_address(recipient):
        raise InvalidRecipientError(f"Invalid recipient address: {recipient!r}")

    if isinstance(validity_window, bool) or not isinstance(validity_window, int) or validity_window <= 0:
        raise AuthorizationError(f"Validity window must be a positive number of seconds: {validity_window}")

    value = parse_units(amount, token.decimals)

    issued_at = int(time.time()) if now is None else int(now)
    return TransferAuthorization(
        from_address=to_checksum_address(payer.address),
        to_address=to_checksum_address(recipient),
        value=value,
        valid_after=0,
        valid_before=issued_at + validity_window,
        nonce=generate_nonce(),
        network=cfg.id,
    )


async def sign_authorization(
    authorization: TransferAuthorization,
    context: Optional[SigningContext],
) -> SignedTransferAuthorization:
    """Request a TransferWithAuthorization signature from the payer's wallet.

    Raises SignatureDeclinedError if the user declines (recoverable) and
    SignerUnavailableError if the capability is missing or broken.
    """
    if context is None or context.signer is None:
        raise SignerUnavailableError("Signing capability unavailable")
    if context.address.lower() != authorization.from_address.lower():
        raise SignerUnavailableError(
            f"Connected wallet {context.address} is not the payer {authorization.from_address}"
        )

    cfg = get_network(authorization.network)
    if context.chain_id != cfg.chain_id:
        raise NetworkMismatchError(cfg.chain_id, context.chain_id)

    full_message = build_full_message(authorization)

    try:
        raw = await context.signer.sign_typed_data(full_message)
    except SignatureDeclinedError:
        logger.info("Signature declined for nonce %s", authorization.nonce)
        raise
    except AuthorizationError:
        raise
    except Exception as e:
        raise SignerUnavailableError(f"Signing failed: {type(e).__name__}: {e}") from e

    if isinstance(raw, str):
        signature = raw if raw.startswith("0x") else "0x" + raw
    else:
        signature = "0x" + bytes(raw).hex()

    return SignedTransferAuthorization(authorization=authorization, signature=signature)


def recover_signer(signed: SignedTransferAuthorization) -> str:
    typed = build_typed_data(signed.authorization)
    signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])
    return Account.recover_message(signable, signature=bytes.fromhex(signed.signature[2:]))


def verify_authorization(
    signed: SignedTransferAuthorization,
    now: Optional[int] = None,
) -> tuple[bool, str]:
    """Check signature, amount and validity window of a signed authorization."""
    auth = signed.authorization
    t = int(time.time()) if now is None else now

    if auth.value <= 0:
        return False, "Authorization value must be positive"
    if t < auth.valid_after:
        return False, f"Authorization not valid until {auth.valid_after}"
    if t >= auth.valid_before:
        return False, f"Authorization expired at {auth.valid_before}"

    try:
        recovered = recover_signer(signed)
    except UnsupportedNetworkError as e:
        return False, str(e)
    except Exception as e:
        return False, f"Signature verification failed: {e}"

    if recovered.lower() != auth.from_address.lower():
        return False, f"Signer mismatch: expected {auth.from_address}, got {recovered}"
    return True, "Valid authorization"


def payment_payload(signed: SignedTransferAuthorization) -> dict[str, Any]:
    """x402 "exact" scheme payment payload for a signed authorization."""
    cfg = get_network(signed.network)
    return {
        "x402Version": X402_VERSION,
        "scheme": "exact",
        "network": cfg.x402_name,
        "payload": {
            "signature": signed.signature,
            "authorization": signed.authorization.to_wire(),
        },
    }


def encode_payment_header(signed: SignedTransferAuthorization) -> str:
    """Base64 JSON of the payment payload (X-PAYMENT header form)."""
    raw = json.dumps(payment_payload(signed), separators=(",", ":")).encode()
    return base64.b64encode(raw).decode()


# ── Engine ────────────────────────────────────────────────────────


class AuthorizationStatus(str, Enum):
    SIGNED = "signed"
    DECLINED = "declined"
    NOT_CONNECTED = "not_connected"
    INVALID_INPUT = "invalid_input"
    UNSUPPORTED_NETWORK = "unsupported_network"
    UNAVAILABLE = "unavailable"


@dataclass
class AuthorizationResult:
    status: AuthorizationStatus
    signed: Optional[SignedTransferAuthorization] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == AuthorizationStatus.SIGNED


class AuthorizationEngine:
    """Build-then-sign with a fixed signing context.

    ``authorize`` returns a tagged result instead of raising for the
    expected failure modes, so callers handle each outcome explicitly.
    """

    def __init__(
        self,
        context: Optional[SigningContext],
        validity_window: int = DEFAULT_VALIDITY_WINDOW,
    ):
        self.context = context
        self.validity_window = validity_window

    def build(
        self,
        recipient: str,
        amount: str,
        network: Union[str, int, NetworkConfig],
        validity_window: Optional[int] = None,
    ) -> TransferAuthorization:
        return build_authorization(
            recipient=recipient,
            amount=amount,
            payer=self.context,
            network=network,
            validity_window=self.validity_window if validity_window is None else validity_window,
        )

    async def sign(self, authorization: TransferAuthorization) -> SignedTransferAuthorization:
        return await sign_authorization(authorization, self.context)

    async def authorize(
        self,
        recipient: str,
        amount: str,
        network: Union[str, int, NetworkConfig],
        validity_window: Optional[int] = None,
    ) -> AuthorizationResult:
        try:
            authorization = self.build(recipient, amount, network, validity_window)
        except WalletNotConnectedError as e:
            return AuthorizationResult(AuthorizationStatus.NOT_CONNECTED, error=str(e))
        except UnsupportedNetworkError as e:
            return AuthorizationResult(AuthorizationStatus.UNSUPPORTED_NETWORK, error=str(e))
        except NetworkMismatchError as e:
            return AuthorizationResult(AuthorizationStatus.UNSUPPORTED_NETWORK, error=str(e))
        except (InvalidAmountError, InvalidRecipientError, AuthorizationError) as e:
            return AuthorizationResult(AuthorizationStatus.INVALID_INPUT, error=str(e))

        try:
            signed = await self.sign(authorization)
        except SignatureDeclinedError as e:
            return AuthorizationResult(AuthorizationStatus.DECLINED, error=str(e))
        except NetworkMismatchError as e:
            return AuthorizationResult(AuthorizationStatus.UNSUPPORTED_NETWORK, error=str(e))
        except SignerUnavailableError as e:
            return AuthorizationResult(AuthorizationStatus.UNAVAILABLE, error=str(e))

        logger.debug(
            "Signed authorization %s for %s atomic units on %s",
            signed.nonce,
            authorization.value,
            authorization.network,
        )
        return AuthorizationResult(AuthorizationStatus.SIGNED, signed=signed)
