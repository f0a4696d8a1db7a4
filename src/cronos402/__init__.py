"""
cronos402 — gasless x402 payments for MCP tools on Cronos.

Signed EIP-3009 authorizations move USDC.e without the payer holding gas;
a facilitator settles them on-chain. A relay carries MCP traffic between
the browser and upstream tool servers.
"""

__version__ = "0.1.0"

from .authorization import (
    AuthorizationEngine,
    AuthorizationResult,
    AuthorizationStatus,
    SignedTransferAuthorization,
    TransferAuthorization,
    build_authorization,
    generate_nonce,
    sign_authorization,
    verify_authorization,
)
from .client import PaymentAwareClient, PaymentRequirement, ToolCallResult
from .networks import get_network, get_stablecoin, supported_networks
from .settlement import HealthStatus, SettlementResult, SettlementStatus, SettlementSubmitter
from .signer import LocalAccountSigner, SigningContext, from_private_key
from .transport import McpHttpClient, proxy_url, wallet_headers

__all__ = [
    "AuthorizationEngine", "AuthorizationResult", "AuthorizationStatus",
    "TransferAuthorization", "SignedTransferAuthorization",
    "build_authorization", "sign_authorization", "verify_authorization", "generate_nonce",
    "PaymentAwareClient", "PaymentRequirement", "ToolCallResult",
    "get_network", "get_stablecoin", "supported_networks",
    "SettlementSubmitter", "SettlementResult", "SettlementStatus", "HealthStatus",
    "SigningContext", "LocalAccountSigner", "from_private_key",
    "McpHttpClient", "proxy_url", "wallet_headers",
]
