"""
cronos402 error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (prompt for a wallet, retry quietly
after a decline, show an actionable error, etc.).
"""

from typing import Any, Optional


class Cronos402Error(Exception):
    """Base error for all cronos402 operations."""
    pass


# Configuration errors
class UnsupportedNetworkError(Cronos402Error):
    """Network or token is not present in the registry."""
    pass


# Authorization errors
class AuthorizationError(Cronos402Error):
    """Base error for building or signing a transfer authorization."""
    pass


class WalletNotConnectedError(AuthorizationError):
    """No signing identity is connected."""
    def __init__(self, message: str = "No signing identity connected"):
        super().__init__(message)


class InvalidAmountError(AuthorizationError):
    """Amount is not a positive decimal within the token's precision."""
    pass


class InvalidRecipientError(AuthorizationError):
    """Recipient is not a well-formed address."""
    pass


class NetworkMismatchError(AuthorizationError):
    """Signing identity is connected to a different chain than the payment targets."""
    def __init__(self, expected_chain_id: int, actual_chain_id: int):
        self.expected_chain_id = expected_chain_id
        self.actual_chain_id = actual_chain_id
        super().__init__(
            f"Wallet is on chain {actual_chain_id}, payment requires chain {expected_chain_id}"
        )


class SignatureDeclinedError(AuthorizationError):
    """User declined the signature request. Recoverable."""
    def __init__(self, message: str = "User declined signature"):
        super().__init__(message)


class SignerUnavailableError(AuthorizationError):
    """Signing capability is missing or failed. Fatal for this attempt."""
    pass


# Payment errors
class PaymentError(Cronos402Error):
    """Base error for paid tool call failures."""
    pass


class SpendCeilingExceededError(PaymentError):
    """Required amount exceeds the caller's spend ceiling."""
    def __init__(self, required: int, ceiling: int):
        self.required = required
        self.ceiling = ceiling
        super().__init__(
            f"Payment of {required} atomic units exceeds spend ceiling of {ceiling}"
        )


class PaymentNotConfirmedError(PaymentError):
    """Confirmation callback did not approve the payment."""
    def __init__(self, message: str = "Payment was not confirmed"):
        super().__init__(message)


class PaymentRequiredError(PaymentError):
    """Upstream demanded payment but the terms could not be satisfied."""
    def __init__(self, message: str, accepts: Optional[list[dict[str, Any]]] = None):
        self.accepts = accepts or []
        super().__init__(message)


class SettlementFailedError(PaymentError):
    """Facilitator did not settle the signed authorization."""
    def __init__(self, result: Any):
        self.result = result
        detail = getattr(result, "error", None) or "Settlement failed"
        reason = getattr(result, "reason", None)
        super().__init__(f"{detail}: {reason}" if reason else detail)


# Relay errors
class RelayError(Cronos402Error):
    """Base error for relay precondition failures."""
    pass


class InvalidTargetError(RelayError):
    """target-url parameter is missing or not a valid absolute URL."""
    pass


# Protocol errors
class McpError(Cronos402Error):
    """JSON-RPC error returned by an MCP server."""
    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"MCP error {code}: {message}")
