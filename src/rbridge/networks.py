"""Static configuration for the 13 supported networks and their wrapped assets.

Required confirmations and decimals are looked up here by network identifier;
no call site hard-codes them.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class ChainFamily(str, Enum):
    """Network families with a distinct adapter implementation."""

    EVM = "evm"
    SOLANA = "solana"
    UTXO = "utxo"


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a blockchain network."""

    network: str
    name: str
    family: ChainFamily
    native_symbol: str
    decimals: int
    required_confirmations: int
    chain_id: Optional[int] = None  # EVM chains only
    explorer_url: str = ""


@dataclass(frozen=True)
class WrappedAsset:
    """A 1:1 platform-side representation of an external asset."""

    symbol: str
    underlying_symbol: str
    network: str
    decimals: int
    min_withdrawal: Decimal
    max_withdrawal: Decimal
    withdrawal_fee: Decimal
    velocity_limit: Decimal  # max withdrawn amount per velocity window
    contract_address: Optional[str] = None  # token contract; None for the native asset

    @property
    def is_native(self) -> bool:
        return self.contract_address is None


# ======================
# Networks
# ======================

NETWORKS: dict[str, NetworkConfig] = {
    "bitcoin": NetworkConfig(
        network="bitcoin",
        name="Bitcoin",
        family=ChainFamily.UTXO,
        native_symbol="BTC",
        decimals=8,
        required_confirmations=3,
        explorer_url="https://blockstream.info",
    ),
    "ethereum": NetworkConfig(
        network="ethereum",
        name="Ethereum",
        family=ChainFamily.EVM,
        native_symbol="ETH",
        decimals=18,
        required_confirmations=12,
        chain_id=1,
        explorer_url="https://etherscan.io",
    ),
    "bsc": NetworkConfig(
        network="bsc",
        name="BNB Smart Chain",
        family=ChainFamily.EVM,
        native_symbol="BNB",
        decimals=18,
        required_confirmations=12,
        chain_id=56,
        explorer_url="https://bscscan.com",
    ),
    "avalanche": NetworkConfig(
        network="avalanche",
        name="Avalanche",
        family=ChainFamily.EVM,
        native_symbol="AVAX",
        decimals=18,
        required_confirmations=12,
        chain_id=43114,
        explorer_url="https://snowtrace.io",
    ),
    "polygon": NetworkConfig(
        network="polygon",
        name="Polygon",
        family=ChainFamily.EVM,
        native_symbol="MATIC",
        decimals=18,
        required_confirmations=12,
        chain_id=137,
        explorer_url="https://polygonscan.com",
    ),
    "arbitrum": NetworkConfig(
        network="arbitrum",
        name="Arbitrum",
        family=ChainFamily.EVM,
        native_symbol="ARB",
        decimals=18,
        required_confirmations=12,
        chain_id=42161,
        explorer_url="https://arbiscan.io",
    ),
    "fantom": NetworkConfig(
        network="fantom",
        name="Fantom",
        family=ChainFamily.EVM,
        native_symbol="FTM",
        decimals=18,
        required_confirmations=12,
        chain_id=250,
        explorer_url="https://ftmscan.com",
    ),
    "linea": NetworkConfig(
        network="linea",
        name="Linea",
        family=ChainFamily.EVM,
        native_symbol="LINEA",
        decimals=18,
        required_confirmations=12,
        chain_id=59144,
        explorer_url="https://lineascan.build",
    ),
    "solana": NetworkConfig(
        network="solana",
        name="Solana",
        family=ChainFamily.SOLANA,
        native_symbol="SOL",
        decimals=9,
        required_confirmations=32,
        explorer_url="https://solscan.io",
    ),
    "unichain": NetworkConfig(
        network="unichain",
        name="Unichain",
        family=ChainFamily.EVM,
        native_symbol="UNI",
        decimals=18,
        required_confirmations=12,
        chain_id=130,
        explorer_url="https://uniscan.xyz",
    ),
    "opbnb": NetworkConfig(
        network="opbnb",
        name="opBNB",
        family=ChainFamily.EVM,
        native_symbol="opBNB",
        decimals=18,
        required_confirmations=12,
        chain_id=204,
        explorer_url="https://opbnbscan.com",
    ),
    "base": NetworkConfig(
        network="base",
        name="Base",
        family=ChainFamily.EVM,
        native_symbol="BASE",
        decimals=18,
        required_confirmations=12,
        chain_id=8453,
        explorer_url="https://basescan.org",
    ),
    "polygon-zkevm": NetworkConfig(
        network="polygon-zkevm",
        name="Polygon zkEVM",
        family=ChainFamily.EVM,
        native_symbol="zkEVM",
        decimals=18,
        required_confirmations=12,
        chain_id=1101,
        explorer_url="https://zkevm.polygonscan.com",
    ),
}


# ======================
# Wrapped assets
# ======================


def _native(
    symbol: str,
    network: str,
    min_withdrawal: str,
    max_withdrawal: str,
    fee: str,
    velocity: str,
) -> WrappedAsset:
    config = NETWORKS[network]
    return WrappedAsset(
        symbol=symbol,
        underlying_symbol=config.native_symbol,
        network=network,
        decimals=config.decimals,
        min_withdrawal=Decimal(min_withdrawal),
        max_withdrawal=Decimal(max_withdrawal),
        withdrawal_fee=Decimal(fee),
        velocity_limit=Decimal(velocity),
    )


WRAPPED_ASSETS: dict[str, WrappedAsset] = {
    asset.symbol: asset
    for asset in (
        _native("rBTC", "bitcoin", "0.0005", "10", "0.0001", "25"),
        _native("rETH", "ethereum", "0.005", "200", "0.001", "500"),
        _native("rBNB", "bsc", "0.01", "1000", "0.0005", "2500"),
        _native("rAVAX", "avalanche", "0.1", "10000", "0.01", "25000"),
        _native("rMATIC", "polygon", "1", "100000", "0.1", "250000"),
        _native("rARB", "arbitrum", "1", "100000", "0.1", "250000"),
        _native("rFTM", "fantom", "1", "100000", "0.1", "250000"),
        _native("rLINEA", "linea", "0.005", "200", "0.0005", "500"),
        _native("rSOL", "solana", "0.05", "5000", "0.001", "12500"),
        _native("rUNI", "unichain", "0.005", "200", "0.0005", "500"),
        _native("ropBNB", "opbnb", "0.01", "1000", "0.0005", "2500"),
        _native("rBASE", "base", "0.005", "200", "0.0005", "500"),
        _native("rzkEVM", "polygon-zkevm", "0.005", "200", "0.0005", "500"),
        WrappedAsset(
            symbol="rUSDT",
            underlying_symbol="USDT",
            network="ethereum",
            decimals=6,
            min_withdrawal=Decimal("10"),
            max_withdrawal=Decimal("100000"),
            withdrawal_fee=Decimal("0"),
            velocity_limit=Decimal("250000"),
            contract_address="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        ),
        WrappedAsset(
            symbol="rUSDC",
            underlying_symbol="USDC",
            network="ethereum",
            decimals=6,
            min_withdrawal=Decimal("10"),
            max_withdrawal=Decimal("100000"),
            withdrawal_fee=Decimal("0"),
            velocity_limit=Decimal("250000"),
            contract_address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        ),
    )
}


def get_network(network: str) -> NetworkConfig:
    """Get configuration for a network identifier.

    Raises:
        KeyError: If the network is not supported
    """
    return NETWORKS[network.lower()]


def is_supported_network(network: str) -> bool:
    return network.lower() in NETWORKS


def supported_networks() -> list[str]:
    return list(NETWORKS.keys())


def get_wrapped_asset(symbol: str) -> WrappedAsset:
    """Get a wrapped asset by its symbol (e.g. ``rBTC``)."""
    return WRAPPED_ASSETS[symbol]


def wrapped_symbol(network: str, token_symbol: str) -> str:
    """Map a deposited asset on a network to its wrapped symbol."""
    for asset in WRAPPED_ASSETS.values():
        if asset.network == network and asset.underlying_symbol == token_symbol:
            return asset.symbol
    raise KeyError(f"No wrapped asset for {token_symbol} on {network}")


def assets_on_network(network: str) -> list[WrappedAsset]:
    """All wrapped assets whose underlying lives on ``network`` (native first)."""
    assets = [a for a in WRAPPED_ASSETS.values() if a.network == network]
    return sorted(assets, key=lambda a: not a.is_native)


def token_assets_on_network(network: str) -> list[WrappedAsset]:
    return [a for a in assets_on_network(network) if not a.is_native]
