"""Settlement orchestrator.

Owns every deposit status transition and every state transition of
withdrawals, and is the only caller of the wrapped-asset ledger.

Deposit settlement:
1. Confirmation tracker reports confirmations >= required
2. Deposit moves pending -> confirmed (compare-and-set)
3. wrapped_minted flips and supply grows in one transaction, under the symbol lock
4. DepositSettled is delivered to the trading engine

Withdrawal flow:
1. Request is validated and the tradable balance (amount + fee) is debited
2. Withdrawal moves pending -> processing
3. wrapped_burned flips and supply shrinks in one transaction
4. Native transfer is sent from the network's hot wallet
5. Send failure after burn is queued for operator compensation
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.adapters.base import NetworkAdapter
from rbridge.adapters.factory import get_adapter
from rbridge.config import Settings, get_settings
from rbridge.errors import (
    AdapterError,
    InsufficientBalance,
    InsufficientSupply,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from rbridge.ledger.database import get_db
from rbridge.ledger.models import (
    AlertKind,
    AlertSeverity,
    CompensationStatus,
    Deposit,
    DepositStatus,
    FailureStage,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)
from rbridge.ledger.repository import LedgerRepository
from rbridge.ledger.wrapped import WrappedAssetLedger
from rbridge.networks import (
    NETWORKS,
    WRAPPED_ASSETS,
    ChainFamily,
    get_wrapped_asset,
    is_supported_network,
    wrapped_symbol,
)
from rbridge.services.alerts import record_alert
from rbridge.trading import DepositSettled, TradingEngine
from rbridge.utils.locks import symbol_lock, user_lock

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    confirmed: list[int] = field(default_factory=list)
    minted: list[int] = field(default_factory=list)
    credited: list[int] = field(default_factory=list)
    mismatches: list[str] = field(default_factory=list)
    interrupted_withdrawals: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "confirmed": self.confirmed,
            "minted": self.minted,
            "credited": self.credited,
            "mismatches": self.mismatches,
            "interrupted_withdrawals": self.interrupted_withdrawals,
        }


class SettlementOrchestrator:
    """Mints on confirmed deposits and drives withdrawals."""

    def __init__(
        self,
        trading_engine: TradingEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
        settings: Optional[Settings] = None,
        auto_process: bool = True,
    ):
        self.trading = trading_engine
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self.settings = settings or get_settings()
        self.auto_process = auto_process
        self._tasks: set[asyncio.Task] = set()

    # ======================
    # Deposits
    # ======================

    async def confirm_deposit(self, deposit_id: int) -> bool:
        """Move a deposit to confirmed; the single winner goes on to mint.

        Returns:
            True if this call performed the transition
        """
        async with get_db(self.session_factory) as session:
            won = await LedgerRepository(session).mark_deposit_confirmed(deposit_id)

        if not won:
            logger.debug(f"Deposit {deposit_id} not confirmed by this call")
            return False

        logger.info(f"Deposit {deposit_id} confirmed")
        await self.on_deposit_confirmed(deposit_id)
        return True

    async def fail_deposit(self, deposit_id: int) -> bool:
        """Move a pending deposit to failed after its transaction failed on chain.

        Returns:
            True if this call performed the transition
        """
        async with get_db(self.session_factory) as session:
            failed = await LedgerRepository(session).mark_deposit_failed(deposit_id)
        if failed:
            logger.warning(f"Deposit {deposit_id} failed on chain")
        return failed

    async def on_deposit_confirmed(self, deposit_id: int) -> Optional[Deposit]:
        """Mint the wrapped asset for a confirmed deposit and credit the user.

        Safe to call any number of times: the mint happens at most once and
        the credit is retried until the trading engine acknowledges it.

        Raises:
            NotFound: If the deposit does not exist
        """
        deposit = await self._load_deposit(deposit_id)
        if deposit.status != DepositStatus.CONFIRMED:
            logger.warning(f"Deposit {deposit_id} is {deposit.status}, not minting")
            return None

        symbol = wrapped_symbol(deposit.network, deposit.token_symbol)

        if not deposit.wrapped_minted:
            async with symbol_lock(symbol, operation=f"mint deposit {deposit_id}"):
                async with get_db(self.session_factory) as session:
                    repo = LedgerRepository(session)
                    if await repo.mark_deposit_minted(deposit_id, deposit.amount):
                        await WrappedAssetLedger(session).mint(symbol, deposit.amount)
                        logger.info(f"Minted {deposit.amount} {symbol} for deposit {deposit_id}")
            deposit = await self._load_deposit(deposit_id)

        if deposit.wrapped_minted and deposit.credited_at is None:
            await self._credit_deposit(deposit, symbol)
            deposit = await self._load_deposit(deposit_id)

        return deposit

    async def _credit_deposit(self, deposit: Deposit, symbol: str) -> bool:
        event = DepositSettled(
            user_id=deposit.user_id,
            symbol=symbol,
            amount=deposit.wrapped_amount or deposit.amount,
            deposit_id=deposit.id,
        )
        try:
            await self.trading.publish_settlement(event)
        except AdapterError as e:
            await record_alert(
                self.session_factory,
                AlertKind.CREDIT_FAILED,
                AlertSeverity.WARNING,
                f"Credit of {event.amount} {symbol} for deposit {deposit.id} failed: {e}",
                "deposit",
                deposit.id,
            )
            return False

        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).mark_deposit_credited(deposit.id)
        logger.info(f"Credited {event.amount} {symbol} to user {deposit.user_id}")
        return True

    async def _load_deposit(self, deposit_id: int) -> Deposit:
        async with get_db(self.session_factory) as session:
            deposit = await LedgerRepository(session).get_deposit(deposit_id)
        if deposit is None:
            raise NotFound(f"Deposit {deposit_id} not found")
        return deposit

    # ======================
    # Withdrawals
    # ======================

    async def validate_withdrawal(
        self,
        user_id: str,
        network: str,
        symbol: str,
        amount: Decimal,
        to_address: str,
    ) -> Decimal:
        """Check a withdrawal request without side effects.

        Returns:
            The fee that will be charged

        Raises:
            ValidationError: With a user-facing reason
        """
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive")
        if not is_supported_network(network):
            raise ValidationError(f"Unsupported network: {network}")

        asset = WRAPPED_ASSETS.get(symbol)
        if asset is None:
            raise ValidationError(f"Unsupported asset: {symbol}")
        if asset.network != network.lower():
            raise ValidationError(f"{symbol} can only be withdrawn to {asset.network}")

        if not self.get_adapter(asset.network).validate_address(to_address):
            raise ValidationError(f"Invalid {network} address")

        if amount < asset.min_withdrawal:
            raise ValidationError(f"Minimum withdrawal is {asset.min_withdrawal} {symbol}")
        if amount > asset.max_withdrawal:
            raise ValidationError(f"Maximum withdrawal is {asset.max_withdrawal} {symbol}")

        fee = asset.withdrawal_fee
        available = await self.trading.get_available_balance(user_id, symbol)
        if available < amount + fee:
            raise InsufficientBalance(
                f"Insufficient {symbol} balance: available {available}, required {amount + fee}"
            )

        window = timedelta(minutes=self.settings.withdrawal_velocity_window_minutes)
        async with get_db(self.session_factory) as session:
            recent = await LedgerRepository(session).get_withdrawn_since(
                user_id, symbol, utcnow() - window
            )
        if recent + amount > asset.velocity_limit:
            raise ValidationError(
                f"Withdrawal limit of {asset.velocity_limit} {symbol} per "
                f"{self.settings.withdrawal_velocity_window_minutes} minutes exceeded"
            )

        return fee

    async def withdraw(
        self,
        user_id: str,
        network: str,
        symbol: str,
        amount: Decimal,
        to_address: str,
    ) -> Withdrawal:
        """Validate, debit the tradable balance and queue a withdrawal.

        Raises:
            ValidationError: If the request is rejected (nothing was changed)
        """
        network = network.lower()

        # Balance and velocity checks only hold until the row exists
        async with user_lock(user_id, operation=f"withdraw {amount} {symbol}"):
            fee = await self.validate_withdrawal(user_id, network, symbol, amount, to_address)

            request_ref = uuid.uuid4().hex
            await self.trading.debit(user_id, symbol, amount + fee, f"withdrawal-request:{request_ref}")

            try:
                async with get_db(self.session_factory) as session:
                    withdrawal = await LedgerRepository(session).create_withdrawal(
                        user_id=user_id,
                        network=network,
                        token_symbol=symbol,
                        amount=amount,
                        fee=fee,
                        to_address=to_address,
                    )
            except Exception:
                await self.trading.credit(
                    user_id, symbol, amount + fee, f"withdrawal-request-refund:{request_ref}"
                )
                raise

        logger.info(
            f"Withdrawal {withdrawal.id} created: {amount} {symbol} (+{fee} fee) "
            f"to {to_address} on {network}"
        )
        if self.auto_process:
            self.schedule(withdrawal.id)
        return withdrawal

    def schedule(self, withdrawal_id: int, resume: bool = False) -> asyncio.Task:
        """Process a withdrawal in the background."""
        task = asyncio.create_task(self._run_withdrawal(withdrawal_id, resume))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_withdrawal(self, withdrawal_id: int, resume: bool = False) -> None:
        try:
            if resume:
                await self._burn_and_send(await self._load_withdrawal(withdrawal_id))
            else:
                await self.process_withdrawal(withdrawal_id)
        except Exception:
            logger.exception(f"Processing withdrawal {withdrawal_id} failed")

    async def process_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        """Burn and send a pending withdrawal.

        A withdrawal that is no longer pending (cancelled, or claimed by
        another worker) is returned untouched.
        """
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            claimed = await repo.transition_withdrawal(
                withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING
            )

        withdrawal = await self._load_withdrawal(withdrawal_id)
        if not claimed:
            logger.info(f"Withdrawal {withdrawal_id} is {withdrawal.status}, skipping")
            return withdrawal

        return await self._burn_and_send(withdrawal)

    async def _burn_and_send(self, withdrawal: Withdrawal) -> Withdrawal:
        symbol = withdrawal.token_symbol

        if not withdrawal.wrapped_burned:
            try:
                async with symbol_lock(symbol, operation=f"burn withdrawal {withdrawal.id}"):
                    async with get_db(self.session_factory) as session:
                        repo = LedgerRepository(session)
                        if await repo.mark_withdrawal_burned(withdrawal.id):
                            await WrappedAssetLedger(session).burn(symbol, withdrawal.amount)
            except (InsufficientSupply, NotFound) as e:
                return await self._fail_before_burn(withdrawal, e)

        return await self._send(await self._load_withdrawal(withdrawal.id))

    async def _fail_before_burn(self, withdrawal: Withdrawal, error: Exception) -> Withdrawal:
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).transition_withdrawal(
                withdrawal.id,
                WithdrawalStatus.PROCESSING,
                WithdrawalStatus.FAILED,
                failure_stage=FailureStage.BURN.value,
                error_message=str(error),
            )

        await record_alert(
            self.session_factory,
            AlertKind.BURN_MISMATCH,
            AlertSeverity.CONSISTENCY,
            f"Burn for withdrawal {withdrawal.id} failed: {error}",
            "withdrawal",
            withdrawal.id,
        )
        await self._refund(withdrawal)
        return await self._load_withdrawal(withdrawal.id)

    async def _dispatch(self, withdrawal: Withdrawal) -> str:
        """Send the native transfer of a burned withdrawal from the hot wallet."""
        from_address, secret = self.hot_wallet(withdrawal.network)
        asset = get_wrapped_asset(withdrawal.token_symbol)
        return await self.get_adapter(withdrawal.network).send_native(
            from_address,
            withdrawal.to_address,
            withdrawal.amount,
            secret,
            asset=asset.underlying_symbol,
        )

    async def _send(self, withdrawal: Withdrawal) -> Withdrawal:
        # The burn is committed: every failure from here on needs compensation
        try:
            tx_hash = await self._dispatch(withdrawal)
        except Exception as e:
            if not isinstance(e, AdapterError):
                logger.exception(f"Unexpected error sending withdrawal {withdrawal.id}")
            async with get_db(self.session_factory) as session:
                await LedgerRepository(session).transition_withdrawal(
                    withdrawal.id,
                    WithdrawalStatus.PROCESSING,
                    WithdrawalStatus.FAILED,
                    failure_stage=FailureStage.SEND.value,
                    compensation_status=CompensationStatus.REQUIRED.value,
                    error_message=str(e),
                )
            await record_alert(
                self.session_factory,
                AlertKind.WITHDRAWAL_SEND_FAILED,
                AlertSeverity.CONSISTENCY,
                f"Withdrawal {withdrawal.id} burned {withdrawal.amount} "
                f"{withdrawal.token_symbol} but the send failed: {e}",
                "withdrawal",
                withdrawal.id,
            )
            return await self._load_withdrawal(withdrawal.id)

        now = utcnow()
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).transition_withdrawal(
                withdrawal.id,
                WithdrawalStatus.PROCESSING,
                WithdrawalStatus.COMPLETED,
                tx_hash=tx_hash,
                sent_at=now,
                completed_at=now,
            )
        logger.info(f"Withdrawal {withdrawal.id} completed: {tx_hash}")
        return await self._load_withdrawal(withdrawal.id)

    def hot_wallet(self, network: str) -> tuple[str, Optional[str]]:
        """Source address and signing secret of a network's hot wallet."""
        family = NETWORKS[network].family
        if family == ChainFamily.EVM:
            key = self.settings.evm_hot_wallet_key
            if not key:
                return "", None
            return Account.from_key(key).address, key
        if family == ChainFamily.SOLANA:
            return self.settings.solana_hot_wallet_address, None
        return self.settings.bitcoin_hot_wallet_address, None

    async def cancel_withdrawal(self, withdrawal_id: int, user_id: Optional[str] = None) -> Withdrawal:
        """Cancel a pending withdrawal and return the debited amount.

        Raises:
            NotFound: If the withdrawal does not exist (or belongs to someone else)
            InvalidStateTransition: If it is no longer pending
        """
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None or (user_id is not None and withdrawal.user_id != user_id):
                raise NotFound(f"Withdrawal {withdrawal_id} not found")
            cancelled = await repo.transition_withdrawal(
                withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.CANCELLED
            )

        if not cancelled:
            current = await self._load_withdrawal(withdrawal_id)
            raise InvalidStateTransition(
                f"Withdrawal {withdrawal_id} is {current.status}; only pending withdrawals can be cancelled"
            )

        logger.info(f"Withdrawal {withdrawal_id} cancelled")
        await self._refund(withdrawal)
        return await self._load_withdrawal(withdrawal_id)

    async def _refund(self, withdrawal: Withdrawal) -> None:
        """Return amount + fee to the user's tradable balance."""
        try:
            await self.trading.credit(
                withdrawal.user_id,
                withdrawal.token_symbol,
                withdrawal.total_debit,
                f"withdrawal-refund:{withdrawal.id}",
            )
        except AdapterError as e:
            await record_alert(
                self.session_factory,
                AlertKind.CREDIT_FAILED,
                AlertSeverity.WARNING,
                f"Refund of withdrawal {withdrawal.id} failed: {e}",
                "withdrawal",
                withdrawal.id,
            )

    async def _load_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        async with get_db(self.session_factory) as session:
            withdrawal = await LedgerRepository(session).get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    # ======================
    # Compensation (operator actions)
    # ======================

    async def recredit_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        """Mint back a send-failed withdrawal and refund the user.

        Raises:
            InvalidStateTransition: If the withdrawal does not need compensation
        """
        withdrawal = await self._load_withdrawal(withdrawal_id)
        symbol = withdrawal.token_symbol

        async with symbol_lock(symbol, operation=f"recredit withdrawal {withdrawal_id}"):
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                claimed = await repo.set_compensation(
                    withdrawal_id, CompensationStatus.REQUIRED, CompensationStatus.RECREDITED
                )
                if claimed:
                    await WrappedAssetLedger(session).mint(symbol, withdrawal.amount)

        if not claimed:
            raise InvalidStateTransition(
                f"Withdrawal {withdrawal_id} has compensation status {withdrawal.compensation_status}"
            )

        logger.info(f"Withdrawal {withdrawal_id} recredited")
        await self._refund(withdrawal)
        return await self._load_withdrawal(withdrawal_id)

    async def retry_withdrawal_send(self, withdrawal_id: int) -> Withdrawal:
        """Re-send a burned withdrawal whose first send failed.

        Raises:
            InvalidStateTransition: If the withdrawal does not need compensation
        """
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                raise NotFound(f"Withdrawal {withdrawal_id} not found")
            claimed = withdrawal.wrapped_burned and await repo.set_compensation(
                withdrawal_id, CompensationStatus.REQUIRED, CompensationStatus.RESENT
            )

        if not claimed:
            raise InvalidStateTransition(
                f"Withdrawal {withdrawal_id} has compensation status {withdrawal.compensation_status}"
            )

        try:
            tx_hash = await self._dispatch(withdrawal)
        except Exception as e:
            async with get_db(self.session_factory) as session:
                await LedgerRepository(session).set_compensation(
                    withdrawal_id,
                    CompensationStatus.RESENT,
                    CompensationStatus.REQUIRED,
                    error_message=str(e),
                )
            logger.error(f"Retry send of withdrawal {withdrawal_id} failed: {e!r}")
            return await self._load_withdrawal(withdrawal_id)

        now = utcnow()
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.FAILED,
                WithdrawalStatus.COMPLETED,
                tx_hash=tx_hash,
                sent_at=now,
                completed_at=now,
                error_message=None,
            )
        logger.info(f"Withdrawal {withdrawal_id} re-sent: {tx_hash}")
        return await self._load_withdrawal(withdrawal_id)

    # ======================
    # Reconciliation and recovery
    # ======================

    async def reconcile(self) -> ReconcileReport:
        """Re-drive stuck settlements and compare supply counters with records.

        Mismatches go to the operator queue; counters are never corrected here.
        """
        report = ReconcileReport()

        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            pending = await repo.get_pending_deposits()
            unminted = await repo.get_confirmed_unminted_deposits()
            uncredited = await repo.get_uncredited_deposits()

        for deposit in pending:
            if deposit.confirmations >= deposit.required_confirmations:
                if await self.confirm_deposit(deposit.id):
                    report.confirmed.append(deposit.id)

        for deposit in unminted:
            result = await self.on_deposit_confirmed(deposit.id)
            if result is not None and result.wrapped_minted:
                report.minted.append(deposit.id)

        for deposit in uncredited:
            result = await self.on_deposit_confirmed(deposit.id)
            if result is not None and result.credited_at is not None:
                report.credited.append(deposit.id)

        report.mismatches = await self._check_supply()
        report.interrupted_withdrawals = await self._check_interrupted_withdrawals()

        logger.info(f"Reconcile finished: {report.to_dict()}")
        return report

    async def _check_supply(self) -> list[str]:
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            contracts = await WrappedAssetLedger(session).list_contracts()

            expected_minted: dict[str, Decimal] = {}
            for network, token_symbol, total in await repo.get_minted_totals():
                symbol = wrapped_symbol(network, token_symbol)
                expected_minted[symbol] = expected_minted.get(symbol, Decimal("0")) + total

            expected = {}
            for contract in contracts:
                minted = expected_minted.get(contract.symbol, Decimal("0"))
                minted += await repo.get_recredited_total(contract.symbol)
                expected[contract.symbol] = (minted, await repo.get_burned_total(contract.symbol))

        mismatches = []
        for contract in contracts:
            asset = WRAPPED_ASSETS.get(contract.symbol)
            quantum = Decimal(10) ** -(asset.decimals if asset else 18)
            minted, burned = expected[contract.symbol]

            checks = (
                (AlertKind.MINT_MISMATCH, "minted", contract.total_minted, minted),
                (AlertKind.BURN_MISMATCH, "burned", contract.total_burned, burned),
            )
            for kind, label, recorded, derived in checks:
                if Decimal(recorded).quantize(quantum) == derived.quantize(quantum):
                    continue
                message = (
                    f"{contract.symbol} total {label} is {recorded} "
                    f"but records add up to {derived}"
                )
                mismatches.append(message)
                await record_alert(
                    self.session_factory,
                    kind,
                    AlertSeverity.CONSISTENCY,
                    message,
                    "contract",
                    contract.symbol,
                )
        return mismatches

    async def _check_interrupted_withdrawals(self) -> list[int]:
        async with get_db(self.session_factory) as session:
            processing = await LedgerRepository(session).get_withdrawals_by_status(
                WithdrawalStatus.PROCESSING
            )

        interrupted = []
        for withdrawal in processing:
            if withdrawal.wrapped_burned and not withdrawal.tx_hash:
                interrupted.append(withdrawal.id)
                await record_alert(
                    self.session_factory,
                    AlertKind.WITHDRAWAL_INTERRUPTED,
                    AlertSeverity.CONSISTENCY,
                    f"Withdrawal {withdrawal.id} was burned but has no send record; "
                    f"check {withdrawal.network} for a transfer to {withdrawal.to_address}",
                    "withdrawal",
                    withdrawal.id,
                )
        return interrupted

    async def recover(self) -> int:
        """Resume withdrawals after a restart.

        Pending withdrawals are rescheduled and unburned processing ones are
        resumed. Burned-but-unsent ones are left for the operator, since the
        send may already have reached the chain.

        Returns:
            Number of withdrawals resumed
        """
        async with get_db(self.session_factory) as session:
            withdrawals = await LedgerRepository(session).get_withdrawals_by_status(
                WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING
            )

        resumed = 0
        for withdrawal in withdrawals:
            if withdrawal.status == WithdrawalStatus.PENDING:
                self.schedule(withdrawal.id)
                resumed += 1
            elif not withdrawal.wrapped_burned:
                self.schedule(withdrawal.id, resume=True)
                resumed += 1

        await self._check_interrupted_withdrawals()
        if resumed:
            logger.info(f"Resumed {resumed} withdrawals")
        return resumed

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
