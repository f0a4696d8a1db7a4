"""
Cronos network registry.

Single source of truth for chain ids, tokens, EIP-712 domains, explorer and
facilitator URLs. Entries are frozen and built once at import; every other
module resolves network facts through the lookups below so the signing
domain and the settlement endpoint can never drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from eth_utils import to_checksum_address

from .errors import UnsupportedNetworkError


NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

CRONOS_FACILITATOR_URL = "https://facilitator.cronoslabs.org/v2/x402"

MAINNET = "mainnet"
TESTNET = "testnet"
DEFAULT_NETWORK = TESTNET


@dataclass(frozen=True)
class Eip712Domain:
    """EIP-712 domain constants declared by a token contract."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class TokenConfig:
    """A token known on one network."""
    symbol: str
    name: str
    decimals: int
    address: str
    is_native: bool = False
    is_stablecoin: bool = False
    eip712: Optional[Eip712Domain] = None


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for one Cronos network."""
    id: str
    x402_name: str
    display_name: str
    chain_id: int
    native_currency: NativeCurrency
    rpc_urls: tuple[str, ...]
    explorer_urls: tuple[str, ...]
    tokens: tuple[TokenConfig, ...]
    facilitator_url: str = CRONOS_FACILITATOR_URL
    is_testnet: bool = False
    aliases: tuple[str, ...] = field(default_factory=tuple)

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    @property
    def explorer_url(self) -> str:
        return self.explorer_urls[0]


_USDC_NAME = "Bridged USDC (Stargate)"
_USDC_VERSION = "1"
_USDC_DECIMALS = 6

_USDC_MAINNET = to_checksum_address("0xf951eC28187D9E5Ca673Da8FE6757E6f0Be5F77C")
_USDC_TESTNET = to_checksum_address("0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0")


NETWORKS: dict[str, NetworkConfig] = {
    MAINNET: NetworkConfig(
        id=MAINNET,
        x402_name="cronos",
        display_name="Cronos",
        chain_id=25,
        native_currency=NativeCurrency(name="Cronos", symbol="CRO"),
        rpc_urls=("https://evm.cronos.org",),
        explorer_urls=("https://cronoscan.com",),
        tokens=(
            TokenConfig(
                symbol="CRO",
                name="Cronos",
                decimals=18,
                address=NATIVE_TOKEN_ADDRESS,
                is_native=True,
            ),
            TokenConfig(
                symbol="USDC.e",
                name=_USDC_NAME,
                decimals=_USDC_DECIMALS,
                address=_USDC_MAINNET,
                is_stablecoin=True,
                eip712=Eip712Domain(
                    name=_USDC_NAME,
                    version=_USDC_VERSION,
                    chain_id=25,
                    verifying_contract=_USDC_MAINNET,
                ),
            ),
        ),
        aliases=("cronos", "cronos-mainnet"),
    ),
    TESTNET: NetworkConfig(
        id=TESTNET,
        x402_name="cronos-testnet",
        display_name="Cronos Testnet",
        chain_id=338,
        native_currency=NativeCurrency(name="Cronos", symbol="TCRO"),
        rpc_urls=("https://evm-t3.cronos.org",),
        explorer_urls=("https://testnet.cronoscan.com",),
        tokens=(
            TokenConfig(
                symbol="TCRO",
                name="Test Cronos",
                decimals=18,
                address=NATIVE_TOKEN_ADDRESS,
                is_native=True,
            ),
            TokenConfig(
                symbol="devUSDC.e",
                name=_USDC_NAME,
                decimals=_USDC_DECIMALS,
                address=_USDC_TESTNET,
                is_stablecoin=True,
                eip712=Eip712Domain(
                    name=_USDC_NAME,
                    version=_USDC_VERSION,
                    chain_id=338,
                    verifying_contract=_USDC_TESTNET,
                ),
            ),
        ),
        is_testnet=True,
        aliases=("cronos-testnet", "cronosTestnet"),
    ),
}

_ALIASES: dict[str, str] = {
    alias: key for key, cfg in NETWORKS.items() for alias in (key, *cfg.aliases)
}
_BY_CHAIN_ID: dict[int, str] = {cfg.chain_id: key for key, cfg in NETWORKS.items()}


def _resolve_key(network: Union[str, int]) -> Optional[str]:
    if isinstance(network, bool):
        return None
    if isinstance(network, int):
        return _BY_CHAIN_ID.get(network)
    raw = str(network).strip()
    if raw in _ALIASES:
        return _ALIASES[raw]
    # CAIP-2 style "eip155:25"
    if raw.startswith("eip155:") and raw[7:].isdigit():
        return _BY_CHAIN_ID.get(int(raw[7:]))
    return None


def is_network_supported(network: Union[str, int]) -> bool:
    return _resolve_key(network) is not None


def get_network(network: Union[str, int, NetworkConfig]) -> NetworkConfig:
    """Resolve a registry id, alias, CAIP-2 id or chain id."""
    if isinstance(network, NetworkConfig):
        return network
    key = _resolve_key(network)
    if key is None:
        raise UnsupportedNetworkError(f"Unsupported network: {network}")
    return NETWORKS[key]


def get_network_by_chain_id(chain_id: int) -> Optional[NetworkConfig]:
    key = _BY_CHAIN_ID.get(chain_id)
    return NETWORKS[key] if key else None


def supported_networks() -> list[str]:
    return list(NETWORKS)


def get_stablecoin(network: Union[str, int, NetworkConfig]) -> TokenConfig:
    """Return the EIP-3009 stablecoin for a network."""
    cfg = get_network(network)
    for token in cfg.tokens:
        if token.is_stablecoin and token.eip712 is not None:
            return token
    raise UnsupportedNetworkError(f"No stablecoin configured for network: {cfg.id}")


def get_native_token(network: Union[str, int, NetworkConfig]) -> TokenConfig:
    cfg = get_network(network)
    for token in cfg.tokens:
        if token.is_native:
            return token
    raise UnsupportedNetworkError(f"No native token configured for network: {cfg.id}")


def get_token(network: Union[str, int, NetworkConfig], address: str) -> TokenConfig:
    """Look up a token by contract address (case-insensitive)."""
    cfg = get_network(network)
    wanted = address.lower()
    for token in cfg.tokens:
        if token.address.lower() == wanted:
            return token
    raise UnsupportedNetworkError(f"Token {address} is not configured on {cfg.id}")


def get_token_domain(network: Union[str, int, NetworkConfig], address: Optional[str] = None) -> Eip712Domain:
    """EIP-712 domain for a token, defaulting to the network's stablecoin."""
    token = get_token(network, address) if address else get_stablecoin(network)
    if token.eip712 is None:
        raise UnsupportedNetworkError(f"Token {token.symbol} has no EIP-712 domain")
    return token.eip712


def facilitator_url(network: Union[str, int, NetworkConfig]) -> str:
    return get_network(network).facilitator_url


def explorer_url(network: Union[str, int, NetworkConfig], value: str, kind: str = "tx") -> str:
    """Explorer link for a transaction hash or an address."""
    if kind not in ("tx", "address"):
        raise ValueError(f"Unknown explorer link kind: {kind}")
    cfg = get_network(network)
    if kind == "address":
        value = to_checksum_address(value)
    return f"{cfg.explorer_url.rstrip('/')}/{kind}/{value}"
