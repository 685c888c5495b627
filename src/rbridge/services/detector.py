"""Deposit detection and confirmation tracking.

The detector turns balance snapshots from address polls into Deposit rows:
- Networks that can list transfers (Bitcoin, Solana) are ingested by tx hash.
- EVM networks fall back to balance deltas against the amount already
  recorded for the address, with a synthetic ``delta:`` hash.

The confirmation tracker then follows each pending deposit until it reaches
its network's required confirmations and hands it to the settlement
orchestrator, which owns every deposit status transition.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.adapters.base import IncomingTransfer, NetworkAdapter, PollHandle, TxState
from rbridge.adapters.factory import get_adapter
from rbridge.config import Settings, get_settings
from rbridge.errors import InvalidStateTransition, NotFound, PermanentAdapterError, TransientAdapterError
from rbridge.ledger.database import get_db
from rbridge.ledger.models import (
    AlertKind,
    AlertSeverity,
    Deposit,
    DepositStatus,
    DetectionMethod,
    as_utc,
    utcnow,
)
from rbridge.ledger.repository import LedgerRepository
from rbridge.networks import WRAPPED_ASSETS, get_network, wrapped_symbol
from rbridge.services.alerts import record_alert
from rbridge.services.settlement import SettlementOrchestrator

logger = logging.getLogger(__name__)


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


class MonitorRegistry:
    """Running address polls and confirmation trackers.

    This is the only in-memory state shared between components. Polls are
    keyed by (network, address), trackers by deposit id.
    """

    def __init__(self):
        self._polls: dict[tuple[str, str], PollHandle] = {}
        self._trackers: dict[int, asyncio.Task] = {}

    def is_monitoring(self, network: str, address: str) -> bool:
        handle = self._polls.get((network, address))
        return handle is not None and handle.active

    def add_poll(self, network: str, address: str, handle: PollHandle) -> None:
        self._polls[(network, address)] = handle

    def stop(self, network: str, address: str) -> bool:
        handle = self._polls.pop((network, address), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def keys(self) -> list[tuple[str, str]]:
        return list(self._polls.keys())

    def is_tracking(self, deposit_id: int) -> bool:
        task = self._trackers.get(deposit_id)
        return task is not None and not task.done()

    def add_tracker(self, deposit_id: int, task: asyncio.Task) -> None:
        self._trackers[deposit_id] = task
        task.add_done_callback(lambda _: self._trackers.pop(deposit_id, None))

    @property
    def tracker_count(self) -> int:
        return len(self._trackers)

    async def stop_all(self) -> None:
        handles = list(self._polls.values())
        trackers = list(self._trackers.values())
        self._polls.clear()
        for handle in handles:
            handle.cancel()
        for task in trackers:
            task.cancel()
        for handle in handles:
            await handle.wait()
        await asyncio.gather(*trackers, return_exceptions=True)
        self._trackers.clear()


class ConfirmationTracker:
    """Follows pending deposits until they are confirmed, failed or stalled."""

    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        monitors: MonitorRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
        settings: Optional[Settings] = None,
    ):
        self.orchestrator = orchestrator
        self.monitors = monitors
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self.settings = settings or get_settings()

    async def check_deposit(self, deposit_id: int) -> bool:
        """Refresh confirmations of one deposit.

        Returns:
            True when tracking is finished (confirmed, failed, stalled or gone)

        Raises:
            TransientAdapterError: If the chain could not be read this cycle;
                nothing was written
        """
        async with get_db(self.session_factory) as session:
            deposit = await LedgerRepository(session).get_deposit(deposit_id)

        if deposit is None or deposit.status != DepositStatus.PENDING:
            return True

        if await self._is_stalled(deposit):
            return True

        adapter = self.get_adapter(deposit.network)
        try:
            observed = await self._observe_confirmations(adapter, deposit)
        except PermanentAdapterError as e:
            await record_alert(
                self.session_factory,
                AlertKind.DEPOSIT_STALLED,
                AlertSeverity.WARNING,
                f"Cannot track deposit {deposit_id} ({deposit.tx_hash}): {e}",
                "deposit",
                deposit_id,
            )
            return True

        if observed is None:
            await self.orchestrator.fail_deposit(deposit_id)
            return True

        async with get_db(self.session_factory) as session:
            if await LedgerRepository(session).raise_confirmations(deposit_id, observed):
                logger.debug(f"Deposit {deposit_id}: {observed}/{deposit.required_confirmations}")

        if max(observed, deposit.confirmations) >= deposit.required_confirmations:
            await self.orchestrator.confirm_deposit(deposit_id)
            return True
        return False

    async def _observe_confirmations(self, adapter: NetworkAdapter, deposit: Deposit) -> Optional[int]:
        """Current confirmations, or None if the transaction failed on chain."""
        if deposit.detection_method == DetectionMethod.BALANCE_DELTA:
            if deposit.block_number is None:
                return 0
            height = await adapter.get_block_height()
            return max(height - deposit.block_number + 1, 0)

        status = await adapter.get_transaction(deposit.tx_hash)
        if status.status == TxState.FAILED:
            return None
        return status.confirmations

    async def _is_stalled(self, deposit: Deposit) -> bool:
        limit = timedelta(hours=self.settings.deposit_monitoring_hours)
        if utcnow() - as_utc(deposit.tracking_restarted_at or deposit.created_at) < limit:
            return False

        await record_alert(
            self.session_factory,
            AlertKind.DEPOSIT_STALLED,
            AlertSeverity.WARNING,
            f"Deposit {deposit.id} ({deposit.tx_hash}) still pending with "
            f"{deposit.confirmations}/{deposit.required_confirmations} confirmations "
            f"after {self.settings.deposit_monitoring_hours}h",
            "deposit",
            deposit.id,
        )
        return True

    async def track(self, deposit_id: int) -> None:
        """Check a deposit on a timer until tracking is finished."""
        interval = self.settings.confirmation_poll_seconds
        failures = 0

        while True:
            try:
                if await self.check_deposit(deposit_id):
                    return
                failures = 0
                delay = interval
            except asyncio.CancelledError:
                raise
            except TransientAdapterError as e:
                failures += 1
                delay = self.backoff(failures)
                logger.warning(f"Confirmation check for deposit {deposit_id} skipped: {e}, retrying in {delay}s")
            except Exception:
                failures += 1
                delay = self.backoff(failures)
                logger.exception(f"Tracking deposit {deposit_id} failed, retrying in {delay}s")
            await asyncio.sleep(delay)

    def backoff(self, failures: int) -> float:
        """Delay after ``failures`` consecutive failed checks."""
        return min(self.settings.confirmation_poll_seconds * 2**failures, self.settings.max_backoff_seconds)

    async def resume(self, deposit_id: int) -> Deposit:
        """Resume tracking a stalled deposit.

        Confirmations already observed are kept; the monitoring window
        restarts now and open stall alerts for the deposit are resolved.

        Raises:
            NotFound: If the deposit does not exist
            InvalidStateTransition: If the deposit is no longer pending
        """
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            deposit = await repo.get_deposit(deposit_id)
            if deposit is None:
                raise NotFound(f"Deposit {deposit_id} not found")
            if not await repo.restart_deposit_tracking(deposit_id):
                raise InvalidStateTransition(
                    f"Deposit {deposit_id} is {deposit.status}; only pending deposits can be tracked"
                )
            await repo.resolve_open_alerts(AlertKind.DEPOSIT_STALLED, "deposit", deposit_id)

        logger.info(
            f"Resumed tracking deposit {deposit_id} at "
            f"{deposit.confirmations}/{deposit.required_confirmations} confirmations"
        )
        self.start(deposit_id)

        async with get_db(self.session_factory) as session:
            return await LedgerRepository(session).get_deposit(deposit_id)

    def start(self, deposit_id: int) -> None:
        if self.monitors.is_tracking(deposit_id):
            return
        task = asyncio.create_task(self.track(deposit_id), name=f"track:{deposit_id}")
        self.monitors.add_tracker(deposit_id, task)


class DepositDetector:
    """Creates deposit records from address poll snapshots."""

    def __init__(
        self,
        tracker: ConfirmationTracker,
        monitors: MonitorRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
        settings: Optional[Settings] = None,
    ):
        self.tracker = tracker
        self.monitors = monitors
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self.settings = settings or get_settings()

    # ======================
    # Monitoring lifecycle
    # ======================

    def start_monitoring(self, network: str, address: str) -> bool:
        """Start polling an address. Returns False if it is already polled."""
        if self.monitors.is_monitoring(network, address):
            return False

        adapter = self.get_adapter(network)

        async def on_change(balances: dict[str, Decimal]) -> None:
            await self.handle_snapshot(network, address, balances)

        handle = adapter.poll_address(address, on_change, self.settings.get_poll_interval(network))
        self.monitors.add_poll(network, address, handle)
        logger.info(f"Monitoring {network}:{address}")
        return True

    def stop_monitoring(self, network: str, address: str) -> bool:
        stopped = self.monitors.stop(network, address)
        if stopped:
            logger.info(f"Stopped monitoring {network}:{address}")
        return stopped

    async def recover(self) -> tuple[int, int]:
        """Restart polls for active addresses and trackers for pending deposits.

        Returns:
            (addresses monitored, deposits tracked)
        """
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            addresses = await repo.get_active_addresses()
            pending = await repo.get_pending_deposits()

        for record in addresses:
            self.start_monitoring(record.network, record.address)
        for deposit in pending:
            self.tracker.start(deposit.id)

        logger.info(f"Recovered {len(addresses)} address monitors and {len(pending)} pending deposits")
        return len(addresses), len(pending)

    # ======================
    # Ingestion
    # ======================

    async def handle_snapshot(self, network: str, address: str, balances: dict[str, Decimal]) -> list[Deposit]:
        """Process a changed balance snapshot of a monitored address.

        Adapter errors propagate so that the poll re-delivers the snapshot.
        """
        adapter = self.get_adapter(network)
        if adapter.supports_transfer_listing:
            transfers = await adapter.list_incoming_transfers(address)
            created = []
            for transfer in transfers:
                deposit = await self.ingest_transfer(network, transfer)
                if deposit is not None:
                    created.append(deposit)
            return created

        return await self._ingest_balance_deltas(adapter, network, address, balances)

    async def _ingest_balance_deltas(
        self,
        adapter: NetworkAdapter,
        network: str,
        address: str,
        balances: dict[str, Decimal],
    ) -> list[Deposit]:
        created = []
        window = timedelta(seconds=self.settings.deposit_dedup_window_seconds)

        for token_symbol, balance in balances.items():
            decimals = self._decimals(network, token_symbol)
            quantum = Decimal(10) ** -decimals

            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                baseline = await repo.get_recorded_amount(network, address, token_symbol)
                delta = (balance - baseline).quantize(quantum)
                duplicate = None
                if delta > 0:
                    duplicate = await repo.find_recent_deposit(
                        network, address, token_symbol, delta, utcnow() - window
                    )

            if delta < 0:
                # Deposit addresses are never swept, so the chain disagrees with our records
                await record_alert(
                    self.session_factory,
                    AlertKind.BALANCE_MISMATCH,
                    AlertSeverity.CONSISTENCY,
                    f"{network}:{address} holds {balance} {token_symbol} "
                    f"but recorded deposits add up to {baseline}",
                    "address",
                    f"{network}:{address}",
                )
                continue
            if delta == 0:
                continue

            if duplicate is not None:
                logger.info(
                    f"Suppressed duplicate delta of {delta} {token_symbol} at {network}:{address} "
                    f"(deposit {duplicate.id})"
                )
                continue

            height = await adapter.get_block_height()
            transfer = IncomingTransfer(
                # Same balance transition always yields the same hash
                tx_hash=f"delta:{network}:{address}:{token_symbol}:{_plain(baseline.quantize(quantum))}:{_plain(balance)}",
                to_address=address,
                token_symbol=token_symbol,
                amount=delta,
                block_number=height,
            )
            deposit = await self.ingest_transfer(network, transfer, DetectionMethod.BALANCE_DELTA)
            if deposit is not None:
                created.append(deposit)

        return created

    @staticmethod
    def _decimals(network: str, token_symbol: str) -> int:
        for asset in WRAPPED_ASSETS.values():
            if asset.network == network and asset.underlying_symbol == token_symbol:
                return asset.decimals
        return get_network(network).decimals

    async def ingest_transfer(
        self,
        network: str,
        transfer: IncomingTransfer,
        detection_method: DetectionMethod = DetectionMethod.TRANSACTION,
    ) -> Optional[Deposit]:
        """Record an observed transfer and start tracking it.

        Returns:
            The new deposit, or None if it was already recorded or is not ours
        """
        try:
            wrapped_symbol(network, transfer.token_symbol)
        except KeyError:
            logger.warning(f"Ignoring unsupported {transfer.token_symbol} transfer on {network}")
            return None

        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                if await repo.get_deposit_by_tx_hash(transfer.tx_hash) is not None:
                    return None

                owner = await repo.get_address_record(network, transfer.to_address)
                if owner is None:
                    logger.warning(f"Transfer {transfer.tx_hash} to unknown address {transfer.to_address}")
                    return None

                deposit = await repo.create_deposit(
                    user_id=owner.user_id,
                    network=network,
                    to_address=transfer.to_address,
                    from_address=transfer.from_address,
                    tx_hash=transfer.tx_hash,
                    token_symbol=transfer.token_symbol,
                    amount=transfer.amount,
                    required_confirmations=get_network(network).required_confirmations,
                    confirmations=transfer.confirmations,
                    block_number=transfer.block_number,
                    detection_method=detection_method,
                )
        except IntegrityError:
            # Another observer recorded the same tx hash first
            logger.debug(f"Deposit {transfer.tx_hash} already recorded")
            return None

        logger.info(
            f"Detected deposit {deposit.id}: {deposit.amount} {deposit.token_symbol} "
            f"on {network} for user {deposit.user_id} ({deposit.tx_hash})"
        )
        self.tracker.start(deposit.id)
        return deposit
