"""Repository for ledger operations.

State transitions are written as compare-and-set UPDATEs (a WHERE clause on
the expected current state); callers inspect the returned bool to learn
whether they won the transition.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rbridge.errors import InvalidStateTransition
from rbridge.ledger.models import (
    AlertKind,
    AlertSeverity,
    CompensationStatus,
    Deposit,
    DepositAddress,
    DepositStatus,
    DetectionMethod,
    FailureStage,
    NetworkStatus,
    OperatorAlert,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)

# Allowed withdrawal state changes; failed -> completed is the operator re-send
WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.FAILED: {WithdrawalStatus.COMPLETED},
}


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _cas(self, model, conditions: Iterable, values: dict[str, Any]) -> bool:
        stmt = (
            update(model)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def _sum_amounts(self, column, *conditions) -> Decimal:
        """Exact Decimal sum of an amount column over matching rows."""
        result = await self.session.execute(select(column).where(*conditions))
        return sum((value for value in result.scalars().all() if value is not None), Decimal("0"))

    # Deposit address operations
    async def get_active_address(self, user_id: str, network: str) -> Optional[DepositAddress]:
        """Get the active deposit address of a user on a network."""
        stmt = select(DepositAddress).where(
            DepositAddress.user_id == user_id,
            DepositAddress.network == network,
            DepositAddress.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_deposit_address(
        self,
        user_id: str,
        network: str,
        address: str,
        encrypted_secret: Optional[str] = None,
    ) -> DepositAddress:
        """Insert a new active address.

        Raises:
            IntegrityError: If the user already has an active address on the network
        """
        record = DepositAddress(
            user_id=user_id,
            network=network,
            address=address,
            encrypted_secret=encrypted_secret,
            is_active=True,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_address_record(self, network: str, address: str) -> Optional[DepositAddress]:
        """Find the owner record of an address, preferring the active row."""
        stmt = (
            select(DepositAddress)
            .where(DepositAddress.network == network, DepositAddress.address == address)
            .order_by(DepositAddress.is_active.desc(), DepositAddress.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_addresses(self, user_id: str, active_only: bool = True) -> list[DepositAddress]:
        stmt = select(DepositAddress).where(DepositAddress.user_id == user_id)
        if active_only:
            stmt = stmt.where(DepositAddress.is_active.is_(True))
        stmt = stmt.order_by(DepositAddress.network)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_addresses(self) -> list[DepositAddress]:
        """Get all active deposit addresses (for monitor recovery)."""
        stmt = (
            select(DepositAddress)
            .where(DepositAddress.is_active.is_(True))
            .order_by(DepositAddress.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_address(self, user_id: str, network: str) -> Optional[DepositAddress]:
        record = await self.get_active_address(user_id, network)
        if record is None:
            return None
        record.is_active = False
        record.deactivated_at = utcnow()
        await self.session.flush()
        return record

    # Deposit operations
    async def create_deposit(
        self,
        user_id: str,
        network: str,
        to_address: str,
        tx_hash: str,
        token_symbol: str,
        amount: Decimal,
        required_confirmations: int,
        from_address: Optional[str] = None,
        confirmations: int = 0,
        block_number: Optional[int] = None,
        detection_method: DetectionMethod = DetectionMethod.TRANSACTION,
    ) -> Deposit:
        """Create a new pending deposit record.

        Raises:
            IntegrityError: If tx_hash was already recorded
        """
        deposit = Deposit(
            user_id=user_id,
            network=network,
            to_address=to_address,
            from_address=from_address,
            tx_hash=tx_hash,
            token_symbol=token_symbol,
            amount=amount,
            confirmations=confirmations,
            required_confirmations=required_confirmations,
            block_number=block_number,
            detection_method=detection_method.value,
            status=DepositStatus.PENDING.value,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        stmt = (
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_by_tx_hash(self, tx_hash: str) -> Optional[Deposit]:
        """Get deposit by transaction hash (idempotent check)."""
        stmt = select(Deposit).where(Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_deposits(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        network: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Deposit], int]:
        """Get a page of deposits plus the total matching count."""
        conditions = []
        if user_id is not None:
            conditions.append(Deposit.user_id == user_id)
        if status is not None:
            conditions.append(Deposit.status == status)
        if network is not None:
            conditions.append(Deposit.network == network)

        count_stmt = select(func.count(Deposit.id)).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Deposit)
            .where(*conditions)
            .order_by(Deposit.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_pending_deposits(self) -> list[Deposit]:
        stmt = (
            select(Deposit)
            .where(Deposit.status == DepositStatus.PENDING.value)
            .order_by(Deposit.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_recorded_amount(self, network: str, to_address: str, token_symbol: str) -> Decimal:
        """Sum of non-failed deposits recorded for an address and asset.

        This is the baseline for balance-delta detection.
        """
        return await self._sum_amounts(
            Deposit.amount,
            Deposit.network == network,
            Deposit.to_address == to_address,
            Deposit.token_symbol == token_symbol,
            Deposit.status != DepositStatus.FAILED.value,
        )

    async def find_recent_deposit(
        self,
        network: str,
        to_address: str,
        token_symbol: str,
        amount: Decimal,
        since: datetime,
    ) -> Optional[Deposit]:
        """Find an equivalent deposit created after ``since`` (duplicate suppression)."""
        stmt = (
            select(Deposit)
            .where(
                Deposit.network == network,
                Deposit.to_address == to_address,
                Deposit.token_symbol == token_symbol,
                Deposit.amount == amount,
                Deposit.created_at >= since,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def raise_confirmations(self, deposit_id: int, observed: int) -> bool:
        """Store ``observed`` only if it is higher than the stored count."""
        return await self._cas(
            Deposit,
            (Deposit.id == deposit_id, Deposit.confirmations < observed),
            {"confirmations": observed},
        )

    async def mark_deposit_confirmed(self, deposit_id: int) -> bool:
        """Transition pending -> confirmed once the threshold is reached."""
        return await self._cas(
            Deposit,
            (
                Deposit.id == deposit_id,
                Deposit.status == DepositStatus.PENDING.value,
                Deposit.confirmations >= Deposit.required_confirmations,
            ),
            {"status": DepositStatus.CONFIRMED.value, "confirmed_at": utcnow()},
        )

    async def mark_deposit_failed(self, deposit_id: int) -> bool:
        return await self._cas(
            Deposit,
            (Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value),
            {"status": DepositStatus.FAILED.value},
        )

    async def restart_deposit_tracking(self, deposit_id: int) -> bool:
        """Start a new monitoring window for a pending deposit. Confirmations are kept."""
        return await self._cas(
            Deposit,
            (Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value),
            {"tracking_restarted_at": utcnow()},
        )

    async def mark_deposit_minted(self, deposit_id: int, wrapped_amount: Decimal) -> bool:
        """Flip wrapped_minted false -> true on a confirmed deposit."""
        return await self._cas(
            Deposit,
            (
                Deposit.id == deposit_id,
                Deposit.status == DepositStatus.CONFIRMED.value,
                Deposit.wrapped_minted.is_(False),
            ),
            {"wrapped_minted": True, "wrapped_amount": wrapped_amount, "minted_at": utcnow()},
        )

    async def mark_deposit_credited(self, deposit_id: int) -> bool:
        return await self._cas(
            Deposit,
            (
                Deposit.id == deposit_id,
                Deposit.wrapped_minted.is_(True),
                Deposit.credited_at.is_(None),
            ),
            {"credited_at": utcnow()},
        )

    async def get_confirmed_unminted_deposits(self) -> list[Deposit]:
        stmt = select(Deposit).where(
            Deposit.status == DepositStatus.CONFIRMED.value,
            Deposit.wrapped_minted.is_(False),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_uncredited_deposits(self) -> list[Deposit]:
        stmt = select(Deposit).where(
            Deposit.wrapped_minted.is_(True),
            Deposit.credited_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_minted_totals(self) -> list[tuple[str, str, Decimal]]:
        """Sum of minted wrapped amounts grouped by (network, token_symbol)."""
        stmt = select(Deposit.network, Deposit.token_symbol, Deposit.wrapped_amount).where(
            Deposit.wrapped_minted.is_(True)
        )
        result = await self.session.execute(stmt)

        totals: dict[tuple[str, str], Decimal] = {}
        for network, token, amount in result.all():
            key = (network, token)
            totals[key] = totals.get(key, Decimal("0")) + (amount or Decimal("0"))
        return [(network, token, total) for (network, token), total in totals.items()]

    # Withdrawal operations
    async def create_withdrawal(
        self,
        user_id: str,
        network: str,
        token_symbol: str,
        amount: Decimal,
        fee: Decimal,
        to_address: str,
    ) -> Withdrawal:
        withdrawal = Withdrawal(
            user_id=user_id,
            network=network,
            token_symbol=token_symbol,
            amount=amount,
            fee=fee,
            to_address=to_address,
            status=WithdrawalStatus.PENDING.value,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        stmt = (
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Withdrawal], int]:
        conditions = []
        if user_id is not None:
            conditions.append(Withdrawal.user_id == user_id)
        if status is not None:
            conditions.append(Withdrawal.status == status)

        count_stmt = select(func.count(Withdrawal.id)).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Withdrawal)
            .where(*conditions)
            .order_by(Withdrawal.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_withdrawals_by_status(self, *statuses: WithdrawalStatus) -> list[Withdrawal]:
        stmt = (
            select(Withdrawal)
            .where(Withdrawal.status.in_([s.value for s in statuses]))
            .order_by(Withdrawal.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_withdrawn_since(self, user_id: str, token_symbol: str, since: datetime) -> Decimal:
        """Total amount a user withdrew of one asset since ``since`` (velocity check)."""
        return await self._sum_amounts(
            Withdrawal.amount,
            Withdrawal.user_id == user_id,
            Withdrawal.token_symbol == token_symbol,
            Withdrawal.created_at >= since,
            Withdrawal.status != WithdrawalStatus.CANCELLED.value,
            (Withdrawal.failure_stage.is_(None)) | (Withdrawal.failure_stage != FailureStage.BURN.value),
        )

    async def transition_withdrawal(
        self,
        withdrawal_id: int,
        from_status: WithdrawalStatus,
        to_status: WithdrawalStatus,
        **values: Any,
    ) -> bool:
        """Move a withdrawal between states if it is still in ``from_status``.

        A withdrawal can only become completed once its wrapped amount is burned.

        Raises:
            InvalidStateTransition: If the state machine has no such edge
        """
        if to_status not in WITHDRAWAL_TRANSITIONS.get(from_status, ()):
            raise InvalidStateTransition(f"Withdrawal cannot move from {from_status.value} to {to_status.value}")

        conditions = [Withdrawal.id == withdrawal_id, Withdrawal.status == from_status.value]
        if to_status == WithdrawalStatus.COMPLETED:
            conditions.append(Withdrawal.wrapped_burned.is_(True))
        values["status"] = to_status.value
        return await self._cas(Withdrawal, conditions, values)

    async def mark_withdrawal_burned(self, withdrawal_id: int) -> bool:
        return await self._cas(
            Withdrawal,
            (
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == WithdrawalStatus.PROCESSING.value,
                Withdrawal.wrapped_burned.is_(False),
            ),
            {"wrapped_burned": True, "burned_at": utcnow()},
        )

    async def set_compensation(
        self,
        withdrawal_id: int,
        expected: CompensationStatus,
        new: CompensationStatus,
        **values: Any,
    ) -> bool:
        values["compensation_status"] = new.value
        return await self._cas(
            Withdrawal,
            (
                Withdrawal.id == withdrawal_id,
                Withdrawal.compensation_status == expected.value,
            ),
            values,
        )

    async def get_burned_total(self, token_symbol: str) -> Decimal:
        return await self._sum_amounts(
            Withdrawal.amount,
            Withdrawal.token_symbol == token_symbol,
            Withdrawal.wrapped_burned.is_(True),
        )

    async def get_recredited_total(self, token_symbol: str) -> Decimal:
        """Amount minted back to users for send-failed withdrawals."""
        return await self._sum_amounts(
            Withdrawal.amount,
            Withdrawal.token_symbol == token_symbol,
            Withdrawal.compensation_status == CompensationStatus.RECREDITED.value,
        )

    # Operator queue
    async def create_alert(
        self,
        kind: AlertKind,
        severity: AlertSeverity,
        message: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[Any] = None,
    ) -> OperatorAlert:
        alert = OperatorAlert(
            kind=kind.value,
            severity=severity.value,
            message=message,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
        )
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def get_open_alert(
        self, kind: AlertKind, reference_type: Optional[str], reference_id: Optional[Any]
    ) -> Optional[OperatorAlert]:
        stmt = (
            select(OperatorAlert)
            .where(
                OperatorAlert.kind == kind.value,
                OperatorAlert.reference_type == reference_type,
                OperatorAlert.reference_id == (str(reference_id) if reference_id is not None else None),
                OperatorAlert.resolved.is_(False),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_alerts(
        self, resolved: Optional[bool] = False, limit: int = 100, offset: int = 0
    ) -> list[OperatorAlert]:
        stmt = select(OperatorAlert)
        if resolved is not None:
            stmt = stmt.where(OperatorAlert.resolved.is_(resolved))
        stmt = stmt.order_by(OperatorAlert.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def resolve_open_alerts(
        self, kind: AlertKind, reference_type: Optional[str], reference_id: Optional[Any]
    ) -> int:
        stmt = (
            update(OperatorAlert)
            .where(
                OperatorAlert.kind == kind.value,
                OperatorAlert.reference_type == reference_type,
                OperatorAlert.reference_id == (str(reference_id) if reference_id is not None else None),
                OperatorAlert.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def resolve_alert(self, alert_id: int) -> Optional[OperatorAlert]:
        stmt = select(OperatorAlert).where(OperatorAlert.id == alert_id)
        result = await self.session.execute(stmt)
        alert = result.scalar_one_or_none()
        if alert is None:
            return None
        if not alert.resolved:
            alert.resolved = True
            alert.resolved_at = utcnow()
            await self.session.flush()
        return alert

    # Network status
    async def upsert_network_status(
        self,
        network: str,
        is_online: bool,
        block_height: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> NetworkStatus:
        stmt = select(NetworkStatus).where(NetworkStatus.network == network)
        result = await self.session.execute(stmt)
        status = result.scalar_one_or_none()

        if status is None:
            status = NetworkStatus(network=network)
            self.session.add(status)

        status.is_online = is_online
        if block_height is not None:
            status.block_height = block_height
        status.error_message = error_message
        status.last_checked = utcnow()
        await self.session.flush()
        return status

    async def get_network_statuses(self) -> list[NetworkStatus]:
        result = await self.session.execute(select(NetworkStatus).order_by(NetworkStatus.network))
        return list(result.scalars().all())

    # Stats
    async def count_by_status(self, model) -> dict[str, int]:
        stmt = select(model.status, func.count(model.id)).group_by(model.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def get_activity_since(self, model, since: datetime) -> list[tuple[str, str, str, str, Decimal]]:
        """(network, token_symbol, status, user_id, amount) of deposits or withdrawals created since ``since``."""
        stmt = (
            select(model.network, model.token_symbol, model.status, model.user_id, model.amount)
            .where(model.created_at >= since)
            .order_by(model.id)
        )
        result = await self.session.execute(stmt)
        return [tuple(row) for row in result.all()]
