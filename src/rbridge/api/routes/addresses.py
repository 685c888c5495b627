"""Deposit address endpoints."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from rbridge.api.dependencies import get_bridge
from rbridge.services.bridge import Bridge

router = APIRouter()


class DepositAddressRequest(BaseModel):
    """Request for a user's deposit address on a network."""

    user_id: str = Field(..., min_length=1, max_length=64)
    network: str = Field(..., min_length=2, max_length=32, description="Network identifier, e.g. bitcoin")

    @field_validator("network")
    @classmethod
    def normalize_network(cls, v: str) -> str:
        return v.strip().lower()


class DepositAddressResponse(BaseModel):
    address: str
    network: str


class DepositAddressInfo(BaseModel):
    address: str
    network: str
    is_active: bool
    created_at: str | None = None


@router.post("/deposit-address", response_model=DepositAddressResponse)
async def get_deposit_address(
    request: DepositAddressRequest,
    bridge: Bridge = Depends(get_bridge),
) -> DepositAddressResponse:
    """Get (or create on first request) the user's deposit address."""
    record = await bridge.registry.get_or_create_address(request.user_id, request.network)
    return DepositAddressResponse(address=record.address, network=record.network)


@router.get("/deposit-addresses", response_model=list[DepositAddressInfo])
async def list_deposit_addresses(
    user_id: str = Query(..., min_length=1),
    bridge: Bridge = Depends(get_bridge),
) -> list[DepositAddressInfo]:
    """List a user's active deposit addresses."""
    records = await bridge.registry.get_user_addresses(user_id)
    return [
        DepositAddressInfo(
            address=r.address,
            network=r.network,
            is_active=r.is_active,
            created_at=r.created_at.isoformat() if r.created_at else None,
        )
        for r in records
    ]


class BulkDepositAddressRequest(BaseModel):
    """Request for a user's deposit addresses on several networks."""

    user_id: str = Field(..., min_length=1, max_length=64)
    networks: list[str] | None = Field(default=None, description="Defaults to every supported network")

    @field_validator("networks")
    @classmethod
    def normalize_networks(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return [n.strip().lower() for n in v]


class IssuedAddress(BaseModel):
    network: str
    address: str | None = None


@router.post("/deposit-addresses", response_model=list[IssuedAddress])
async def issue_deposit_addresses(
    request: BulkDepositAddressRequest,
    bridge: Bridge = Depends(get_bridge),
) -> list[IssuedAddress]:
    """Issue addresses on every requested network. Failed networks have no address."""
    issued = await bridge.registry.get_or_create_addresses(request.user_id, request.networks)
    return [
        IssuedAddress(network=network, address=record.address if record is not None else None)
        for network, record in issued.items()
    ]
