"""Withdrawal endpoints."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from rbridge.api.dependencies import get_bridge
from rbridge.api.schemas import WithdrawalOut, WithdrawalRequest
from rbridge.ledger.database import get_db
from rbridge.ledger.models import WithdrawalStatus
from rbridge.ledger.repository import LedgerRepository
from rbridge.services.bridge import Bridge

logger = logging.getLogger(__name__)

router = APIRouter()

VALID_STATUSES = {s.value for s in WithdrawalStatus}


class WithdrawalResponse(BaseModel):
    withdrawal_id: int
    status: str


class CancelRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("/withdrawals", response_model=WithdrawalResponse)
async def create_withdrawal(
    request: WithdrawalRequest,
    bridge: Bridge = Depends(get_bridge),
) -> WithdrawalResponse:
    """Request a withdrawal. Validation failures return 400 with a reason."""
    withdrawal = await bridge.orchestrator.withdraw(
        user_id=request.user_id,
        network=request.network,
        symbol=request.symbol,
        amount=Decimal(request.amount),
        to_address=request.to_address,
    )
    return WithdrawalResponse(withdrawal_id=withdrawal.id, status=str(withdrawal.status))


@router.get("/withdrawals")
async def list_withdrawals(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    bridge: Bridge = Depends(get_bridge),
) -> dict:
    if status is not None and status not in VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    async with get_db(bridge.session_factory) as session:
        withdrawals, total = await LedgerRepository(session).list_withdrawals(
            user_id=user_id, status=status, limit=limit, offset=offset
        )

    return {
        "items": [WithdrawalOut.from_model(w).model_dump() for w in withdrawals],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalOut)
async def get_withdrawal(withdrawal_id: int, bridge: Bridge = Depends(get_bridge)) -> WithdrawalOut:
    async with get_db(bridge.session_factory) as session:
        withdrawal = await LedgerRepository(session).get_withdrawal(withdrawal_id)

    if withdrawal is None:
        raise HTTPException(status_code=404, detail="Withdrawal not found")
    return WithdrawalOut.from_model(withdrawal)


@router.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    withdrawal_id: int,
    request: Optional[CancelRequest] = None,
    bridge: Bridge = Depends(get_bridge),
) -> WithdrawalResponse:
    """Cancel a pending withdrawal (409 once processing has started)."""
    user_id = request.user_id if request else None
    withdrawal = await bridge.orchestrator.cancel_withdrawal(withdrawal_id, user_id=user_id)
    return WithdrawalResponse(withdrawal_id=withdrawal.id, status=str(withdrawal.status))
