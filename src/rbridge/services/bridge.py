"""Wiring of the bridge components into one object.

Both the API process and the operator scripts build a ``Bridge`` so that
every component shares one session factory, one adapter provider and one
monitor registry.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.adapters.base import NetworkAdapter
from rbridge.adapters.factory import get_adapter
from rbridge.config import Settings, get_settings
from rbridge.crypto import SecretEncryptor
from rbridge.ledger.database import get_db
from rbridge.ledger.wrapped import WrappedAssetLedger
from rbridge.services.address_registry import AddressRegistry
from rbridge.services.detector import ConfirmationTracker, DepositDetector, MonitorRegistry
from rbridge.services.network_status import NetworkStatusService
from rbridge.services.settlement import SettlementOrchestrator
from rbridge.trading import TradingEngine, create_trading_engine

logger = logging.getLogger(__name__)


class Bridge:
    """All bridge services, built around one session factory."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        trading_engine: Optional[TradingEngine] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
        settings: Optional[Settings] = None,
        encryptor: Optional[SecretEncryptor] = None,
        auto_process: bool = True,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.trading = trading_engine or create_trading_engine(
            self.settings.trading_engine_url, self.settings.trading_engine_token
        )
        self.monitors = MonitorRegistry()
        self.orchestrator = SettlementOrchestrator(
            self.trading,
            session_factory=session_factory,
            adapter_provider=adapter_provider,
            settings=self.settings,
            auto_process=auto_process,
        )
        self.tracker = ConfirmationTracker(
            self.orchestrator,
            self.monitors,
            session_factory=session_factory,
            adapter_provider=adapter_provider,
            settings=self.settings,
        )
        self.detector = DepositDetector(
            self.tracker,
            self.monitors,
            session_factory=session_factory,
            adapter_provider=adapter_provider,
            settings=self.settings,
        )
        self.registry = AddressRegistry(
            self.detector,
            session_factory=session_factory,
            adapter_provider=adapter_provider,
            encryptor=encryptor,
        )
        self.network_status = NetworkStatusService(
            session_factory=session_factory, adapter_provider=adapter_provider
        )

    async def seed(self) -> None:
        """Create missing wrapped asset contract rows."""
        async with get_db(self.session_factory) as session:
            await WrappedAssetLedger(session).ensure_contracts()

    async def start(self, status_refresh: bool = True) -> None:
        """Seed contracts and reload all in-flight work from the store."""
        await self.seed()
        addresses, deposits = await self.detector.recover()
        withdrawals = await self.orchestrator.recover()
        logger.info(
            f"Bridge started: {addresses} addresses, {deposits} pending deposits, "
            f"{withdrawals} withdrawals resumed"
        )
        if status_refresh:
            self.network_status.start(self.settings.network_status_interval_seconds)

    async def stop(self) -> None:
        await self.network_status.stop()
        await self.monitors.stop_all()
        await self.orchestrator.shutdown()
        await self.trading.close()
        logger.info("Bridge stopped")
