"""Admin API endpoints (token-protected)."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from rbridge.api.dependencies import get_bridge, require_admin_token
from rbridge.api.schemas import DepositOut, WithdrawalOut
from rbridge.ledger.database import get_db
from rbridge.ledger.models import Deposit, OperatorAlert, Withdrawal
from rbridge.ledger.repository import LedgerRepository
from rbridge.services.bridge import Bridge
from rbridge.services.statistics import activity_statistics

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_token)])


class AlertOut(BaseModel):
    """Operator queue entry."""

    id: int
    kind: str
    severity: str
    message: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    resolved: bool
    created_at: Optional[str] = None
    resolved_at: Optional[str] = None

    @classmethod
    def from_model(cls, alert: OperatorAlert) -> "AlertOut":
        return cls(
            id=alert.id,
            kind=alert.kind,
            severity=alert.severity,
            message=alert.message,
            reference_type=alert.reference_type,
            reference_id=alert.reference_id,
            resolved=alert.resolved,
            created_at=alert.created_at.isoformat() if alert.created_at else None,
            resolved_at=alert.resolved_at.isoformat() if alert.resolved_at else None,
        )


class SystemStats(BaseModel):
    """System statistics."""

    deposits: dict[str, int]
    withdrawals: dict[str, int]
    open_alerts: int
    monitored_addresses: int
    tracked_deposits: int
    dry_run: bool


@router.get("/alerts", response_model=list[AlertOut])
async def list_alerts(
    resolved: Optional[bool] = False,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    bridge: Bridge = Depends(get_bridge),
) -> list[AlertOut]:
    """List operator alerts. Unresolved by default."""
    async with get_db(bridge.session_factory) as session:
        alerts = await LedgerRepository(session).list_alerts(resolved=resolved, limit=limit, offset=offset)
    return [AlertOut.from_model(a) for a in alerts]


@router.post("/alerts/{alert_id}/resolve", response_model=AlertOut)
async def resolve_alert(alert_id: int, bridge: Bridge = Depends(get_bridge)) -> AlertOut:
    async with get_db(bridge.session_factory) as session:
        alert = await LedgerRepository(session).resolve_alert(alert_id)

    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return AlertOut.from_model(alert)


@router.post("/reconcile")
async def reconcile(bridge: Bridge = Depends(get_bridge)) -> dict:
    """Run a reconciliation pass and return its report."""
    report = await bridge.orchestrator.reconcile()
    return report.to_dict()


@router.post("/withdrawals/{withdrawal_id}/recredit", response_model=WithdrawalOut)
async def recredit_withdrawal(withdrawal_id: int, bridge: Bridge = Depends(get_bridge)) -> WithdrawalOut:
    """Compensate a send-failed withdrawal by re-minting and refunding."""
    withdrawal = await bridge.orchestrator.recredit_withdrawal(withdrawal_id)
    return WithdrawalOut.from_model(withdrawal)


@router.post("/withdrawals/{withdrawal_id}/retry-send", response_model=WithdrawalOut)
async def retry_withdrawal_send(withdrawal_id: int, bridge: Bridge = Depends(get_bridge)) -> WithdrawalOut:
    """Compensate a send-failed withdrawal by sending it again."""
    withdrawal = await bridge.orchestrator.retry_withdrawal_send(withdrawal_id)
    return WithdrawalOut.from_model(withdrawal)


@router.get("/stats", response_model=SystemStats)
async def get_stats(bridge: Bridge = Depends(get_bridge)) -> SystemStats:
    async with get_db(bridge.session_factory) as session:
        repo = LedgerRepository(session)
        deposits = await repo.count_by_status(Deposit)
        withdrawals = await repo.count_by_status(Withdrawal)
        open_alerts = len(await repo.list_alerts(resolved=False, limit=10_000))

    return SystemStats(
        deposits=deposits,
        withdrawals=withdrawals,
        open_alerts=open_alerts,
        monitored_addresses=len(bridge.monitors.keys()),
        tracked_deposits=bridge.monitors.tracker_count,
        dry_run=bridge.settings.dry_run,
    )


@router.get("/stats/activity")
async def get_activity_stats(timeframe: str = "24h", bridge: Bridge = Depends(get_bridge)) -> dict:
    """Deposit and withdrawal counts and amount sums for 1h, 24h, 7d or 30d."""
    return await activity_statistics(bridge.session_factory, timeframe)


@router.post("/deposits/{deposit_id}/resume-tracking", response_model=DepositOut)
async def resume_deposit_tracking(deposit_id: int, bridge: Bridge = Depends(get_bridge)) -> DepositOut:
    """Resume tracking a stalled pending deposit. Observed confirmations are kept."""
    deposit = await bridge.tracker.resume(deposit_id)
    return DepositOut.from_model(deposit)
