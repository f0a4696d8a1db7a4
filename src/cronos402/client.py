"""
Payment-aware MCP client.

Wraps any client exposing ``call_tool(name, arguments, meta)`` so that a
payment-required reply is handled in place:

1. Detect the x402 challenge (JSON-RPC error 402, or an ``isError`` tool
   result carrying ``{x402Version, accepts}``).
2. Fail fast with WalletNotConnectedError if no wallet is connected.
3. Pick a supported "exact" option and check it against the spend ceiling.
4. Ask the confirmation callback. Nothing is signed unless it says yes.
5. Build and sign a fresh EIP-3009 authorization, submit it for settlement.
6. Retry the tool call once with the settlement proof in ``_meta``.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from eth_utils import is_address

from .authorization import DEFAULT_VALIDITY_WINDOW, build_authorization, sign_authorization
from .errors import (
    McpError,
    PaymentNotConfirmedError,
    PaymentRequiredError,
    SettlementFailedError,
    SpendCeilingExceededError,
    UnsupportedNetworkError,
    WalletNotConnectedError,
)
from .money import format_units
from .networks import get_network, get_stablecoin
from .settlement import SettlementResult, SettlementSubmitter
from .signer import SigningContext

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_CODE = 402
SETTLEMENT_META_KEY = "x402/settlement"

# 0.1 USDC.e
DEFAULT_MAX_PAYMENT_VALUE = 100_000

PAID_TOOL_MESSAGE = "This is a paid tool. Please connect your wallet to continue."

ConfirmationCallback = Callable[[list[dict]], Union[bool, Awaitable[bool]]]


class ToolClient(Protocol):
    async def call_tool(
        self, name: str, arguments: Optional[dict] = None, meta: Optional[dict] = None
    ) -> dict: ...


@dataclass(frozen=True)
class PaymentRequirement:
    """One entry of a challenge's ``accepts`` list."""
    scheme: str
    network: str
    amount: int
    pay_to: str
    asset: Optional[str] = None
    resource: Optional[str] = None
    description: Optional[str] = None
    max_timeout_seconds: Optional[int] = None
    extra: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRequirement":
        """Parse v1 (``maxAmountRequired``) or v2 (``amount``) terms. Raises ValueError."""
        raw_amount = data.get("maxAmountRequired", data.get("amount"))
        if raw_amount is None or isinstance(raw_amount, bool) or not str(raw_amount).isdigit():
            raise ValueError(f"Invalid payment amount: {raw_amount!r}")
        if int(str(raw_amount)) <= 0:
            raise ValueError(f"Payment amount must be positive: {raw_amount!r}")
        pay_to = data.get("payTo") or data.get("pay_to")
        if not pay_to:
            raise ValueError("Payment requirement has no payTo")
        if not is_address(pay_to):
            raise ValueError(f"Invalid payTo address: {pay_to!r}")
        timeout = data.get("maxTimeoutSeconds")
        return cls(
            scheme=str(data.get("scheme", "")),
            network=str(data.get("network", "")),
            amount=int(str(raw_amount)),
            pay_to=str(pay_to),
            asset=data.get("asset"),
            resource=data.get("resource"),
            description=data.get("description"),
            max_timeout_seconds=int(timeout) if isinstance(timeout, int) else None,
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ToolCallResult:
    content: list = field(default_factory=list)
    is_error: bool = False
    structured_content: Optional[dict] = None
    meta: Optional[dict] = None
    settlement: Optional[SettlementResult] = None
    payment_made: bool = False

    @classmethod
    def from_raw(cls, raw: dict, **kwargs) -> "ToolCallResult":
        return cls(
            content=list(raw.get("content") or []),
            is_error=bool(raw.get("isError")),
            structured_content=raw.get("structuredContent"),
            meta=raw.get("_meta"),
            **kwargs,
        )

    def text(self) -> str:
        return "\n".join(
            item.get("text", "")
            for item in self.content
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
        )


def _challenge_from_object(obj: Any) -> Optional[dict]:
    if not isinstance(obj, dict):
        return None
    if "x402Version" not in obj and "x402_version" not in obj:
        return None
    accepts = obj.get("accepts")
    if not isinstance(accepts, list) or not accepts:
        return None
    return {"x402Version": obj.get("x402Version", obj.get("x402_version")), "accepts": accepts}


def challenge_from_error(error: McpError) -> Optional[dict]:
    if error.code != PAYMENT_REQUIRED_CODE:
        return None
    return _challenge_from_object(error.data)


def challenge_from_result(result: dict) -> Optional[dict]:
    """Payment terms from an ``isError`` tool result, if present."""
    if not isinstance(result, dict) or not result.get("isError"):
        return None
    challenge = _challenge_from_object(result.get("structuredContent"))
    if challenge:
        return challenge
    content = result.get("content") or []
    if content and isinstance(content[0], dict) and content[0].get("type") == "text":
        text = content[0].get("text")
        if not isinstance(text, str):
            return None
        try:
            return _challenge_from_object(json.loads(text))
        except ValueError:
            return None
    return None


class PaymentAwareClient:
    """Decorates a tool client with x402 payment handling."""

    def __init__(
        self,
        base: ToolClient,
        signing_context: Optional[SigningContext],
        submitter: SettlementSubmitter,
        max_payment_value: int = DEFAULT_MAX_PAYMENT_VALUE,
        confirmation_callback: Optional[ConfirmationCallback] = None,
        validity_window: int = DEFAULT_VALIDITY_WINDOW,
    ):
        if max_payment_value < 0:
            raise ValueError("max_payment_value cannot be negative")
        self.base = base
        self.context = signing_context
        self.submitter = submitter
        self.max_payment_value = max_payment_value
        self.confirmation_callback = confirmation_callback
        self.validity_window = validity_window

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict] = None,
        meta: Optional[dict] = None,
    ) -> ToolCallResult:
        try:
            raw = await self.base.call_tool(name, arguments, meta=meta)
        except McpError as e:
            challenge = challenge_from_error(e)
            if challenge is None:
                raise
        else:
            challenge = challenge_from_result(raw)
            if challenge is None:
                return ToolCallResult.from_raw(raw)

        logger.info("Tool %s requires payment", name)
        settlement, proof = await self._pay(challenge["accepts"])

        retry_meta = {**(meta or {}), SETTLEMENT_META_KEY: proof}
        raw = await self.base.call_tool(name, arguments, meta=retry_meta)
        return ToolCallResult.from_raw(raw, settlement=settlement, payment_made=True)

    def select_requirement(self, accepts: list[dict]) -> PaymentRequirement:
        """First "exact" option payable with a registered stablecoin.

        Options on the wallet's current chain win over others.
        """
        candidates = []
        for entry in accepts:
            try:
                requirement = PaymentRequirement.from_dict(entry)
            except ValueError as e:
                logger.debug("Skipping malformed payment option: %s", e)
                continue
            if requirement.scheme != "exact":
                continue
            try:
                token = get_stablecoin(requirement.network)
            except UnsupportedNetworkError:
                continue
            if requirement.asset and requirement.asset.lower() != token.address.lower():
                continue
            candidates.append(requirement)

        if not candidates:
            raise PaymentRequiredError("No supported payment option offered", accepts)

        if self.context is not None:
            for requirement in candidates:
                if get_network(requirement.network).chain_id == self.context.chain_id:
                    return requirement
        return candidates[0]

    async def _confirm(self, accepts: list[dict]) -> bool:
        if self.confirmation_callback is None:
            return True
        answer = self.confirmation_callback(accepts)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def _pay(self, accepts: list[dict]) -> tuple[SettlementResult, dict]:
        if self.context is None or not self.context.can_sign:
            raise WalletNotConnectedError(PAID_TOOL_MESSAGE)

        requirement = self.select_requirement(accepts)
        if requirement.amount > self.max_payment_value:
            raise SpendCeilingExceededError(requirement.amount, self.max_payment_value)

        if not await self._confirm(accepts):
            raise PaymentNotConfirmedError()

        token = get_stablecoin(requirement.network)
        authorization = build_authorization(
            recipient=requirement.pay_to,
            amount=format_units(requirement.amount, token.decimals),
            payer=self.context,
            network=requirement.network,
            validity_window=self.validity_window,
        )
        signed = await sign_authorization(authorization, self.context)

        result = await self.submitter.submit(signed, authorization.network)
        if not result.success:
            raise SettlementFailedError(result)

        proof = {
            "txHash": result.tx_hash,
            "network": result.network or authorization.network,
            "from": authorization.from_address,
            "nonce": authorization.nonce,
        }
        if result.explorer_url:
            proof["explorerUrl"] = result.explorer_url
        return result, proof
