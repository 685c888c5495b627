"""Network status and wrapped asset endpoints."""

from fastapi import APIRouter, Depends

from rbridge.api.dependencies import get_bridge
from rbridge.ledger.database import get_db
from rbridge.ledger.wrapped import WrappedAssetLedger
from rbridge.networks import NETWORKS, WRAPPED_ASSETS
from rbridge.services.bridge import Bridge

router = APIRouter()


@router.get("/network-status")
async def network_status(bridge: Bridge = Depends(get_bridge)) -> dict:
    """Per-network online flag, block height and last check time."""
    return await bridge.network_status.snapshot()


@router.get("/networks")
async def list_networks() -> list[dict]:
    """Static configuration of the supported networks."""
    return [
        {
            "network": config.network,
            "name": config.name,
            "family": config.family.value,
            "native_symbol": config.native_symbol,
            "decimals": config.decimals,
            "required_confirmations": config.required_confirmations,
            "chain_id": config.chain_id,
            "explorer_url": config.explorer_url,
        }
        for config in NETWORKS.values()
    ]


@router.get("/wrapped-assets")
async def wrapped_assets(bridge: Bridge = Depends(get_bridge)) -> list[dict]:
    """Wrapped assets with supply counters and withdrawal limits."""
    async with get_db(bridge.session_factory) as session:
        contracts = await WrappedAssetLedger(session).list_contracts()

    result = []
    for contract in contracts:
        asset = WRAPPED_ASSETS.get(contract.symbol)
        result.append(
            {
                "symbol": contract.symbol,
                "underlying_symbol": contract.underlying_symbol,
                "network": contract.original_network,
                "total_supply": str(contract.total_supply),
                "total_minted": str(contract.total_minted),
                "total_burned": str(contract.total_burned),
                "withdrawal_fee": str(asset.withdrawal_fee) if asset else None,
                "min_withdrawal": str(asset.min_withdrawal) if asset else None,
                "max_withdrawal": str(asset.max_withdrawal) if asset else None,
            }
        )
    return result
