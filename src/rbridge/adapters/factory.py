"""Factory for network adapters.

The adapter class for a network is chosen once from its chain family and
cached; callers never branch on the network again.
"""

import logging
from typing import Optional

from rbridge.adapters.base import NetworkAdapter
from rbridge.adapters.bitcoin import BitcoinAdapter
from rbridge.adapters.evm import EvmAdapter
from rbridge.adapters.simulated import SimulatedAdapter
from rbridge.adapters.solana import SolanaAdapter
from rbridge.config import Settings, get_settings
from rbridge.errors import ValidationError
from rbridge.networks import ChainFamily, get_network, is_supported_network

logger = logging.getLogger(__name__)

# Cache for adapter instances
_adapter_cache: dict[str, NetworkAdapter] = {}


def create_adapter(network: str, settings: Optional[Settings] = None) -> NetworkAdapter:
    """Build a new adapter for ``network`` from settings."""
    settings = settings or get_settings()
    config = get_network(network)
    common = {
        "rpc_url": settings.get_rpc_url(network),
        "timeout": settings.rpc_timeout_seconds,
        "max_backoff": settings.max_backoff_seconds,
    }

    if settings.dry_run:
        return SimulatedAdapter(network, **common)

    if config.family == ChainFamily.EVM:
        return EvmAdapter(network, **common)
    if config.family == ChainFamily.SOLANA:
        return SolanaAdapter(
            network,
            custody_url=settings.solana_custody_url,
            custody_token=settings.solana_custody_token,
            **common,
        )
    return BitcoinAdapter(
        network,
        node_url=settings.bitcoin_node_url,
        node_user=settings.bitcoin_rpc_user,
        node_password=settings.bitcoin_rpc_password,
        **common,
    )


def get_adapter(network: str) -> NetworkAdapter:
    """Get the adapter for a network.

    Raises:
        ValidationError: If the network is not supported
    """
    if not is_supported_network(network):
        raise ValidationError(f"Unsupported network: {network}")

    network = network.lower()
    if network not in _adapter_cache:
        _adapter_cache[network] = create_adapter(network)
        logger.info(f"Created {type(_adapter_cache[network]).__name__} for {network}")
    return _adapter_cache[network]


async def close_adapters() -> None:
    for adapter in _adapter_cache.values():
        await adapter.close()
    _adapter_cache.clear()
