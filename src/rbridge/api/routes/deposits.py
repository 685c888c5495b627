"""Deposit history endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from rbridge.api.dependencies import get_bridge
from rbridge.api.schemas import DepositOut
from rbridge.ledger.database import get_db
from rbridge.ledger.models import DepositStatus
from rbridge.ledger.repository import LedgerRepository
from rbridge.services.bridge import Bridge

router = APIRouter()

VALID_STATUSES = {s.value for s in DepositStatus}


@router.get("/deposits")
async def list_deposits(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    network: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    bridge: Bridge = Depends(get_bridge),
) -> dict:
    """List deposits, newest first."""
    if status is not None and status not in VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    async with get_db(bridge.session_factory) as session:
        deposits, total = await LedgerRepository(session).list_deposits(
            user_id=user_id, status=status, network=network, limit=limit, offset=offset
        )

    return {
        "items": [DepositOut.from_model(d).model_dump() for d in deposits],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/deposits/by-tx/{tx_hash}", response_model=DepositOut)
async def get_deposit_by_tx(tx_hash: str, bridge: Bridge = Depends(get_bridge)) -> DepositOut:
    """Deposit status by transaction hash."""
    async with get_db(bridge.session_factory) as session:
        deposit = await LedgerRepository(session).get_deposit_by_tx_hash(tx_hash)

    if deposit is None:
        raise HTTPException(status_code=404, detail="Deposit not found")
    return DepositOut.from_model(deposit)


@router.get("/deposits/{deposit_id}", response_model=DepositOut)
async def get_deposit(deposit_id: int, bridge: Bridge = Depends(get_bridge)) -> DepositOut:
    async with get_db(bridge.session_factory) as session:
        deposit = await LedgerRepository(session).get_deposit(deposit_id)

    if deposit is None:
        raise HTTPException(status_code=404, detail="Deposit not found")
    return DepositOut.from_model(deposit)
