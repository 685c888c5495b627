"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "true"
os.environ["ADMIN_TOKEN"] = ""
os.environ["TRADING_ENGINE_URL"] = ""

from rbridge.adapters.simulated import SimulatedAdapter
from rbridge.config import Settings
from rbridge.crypto import SecretEncryptor, generate_master_key
from rbridge.ledger.database import get_db, init_db, make_session_factory
from rbridge.ledger.repository import LedgerRepository
from rbridge.networks import supported_networks
from rbridge.services.bridge import Bridge
from rbridge.trading import InMemoryTradingEngine
from rbridge.utils.locks import clear_symbol_locks, clear_user_locks

# Known-valid destination addresses
BTC_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
EVM_ADDRESS = "0x" + "ab" * 20
HOT_WALLET_KEY = "0x" + "11" * 32


@pytest.fixture
def test_settings() -> Settings:
    """Settings with long intervals so background loops stay idle."""
    return Settings(
        _env_file=None,
        environment="test",
        dry_run=True,
        poll_interval_seconds=3600,
        poll_interval_overrides={},
        confirmation_poll_seconds=3600,
        network_status_interval_seconds=3600,
        deposit_dedup_window_seconds=120,
        deposit_monitoring_hours=24,
        evm_hot_wallet_key=HOT_WALLET_KEY,
        bitcoin_hot_wallet_address="bc1qhotwallet",
        solana_hot_wallet_address="So1anaHotWa11et",
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bridge.db'}", echo=False)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def adapters() -> dict[str, SimulatedAdapter]:
    """One simulated chain per supported network."""
    return {network: SimulatedAdapter(network) for network in supported_networks()}


@pytest.fixture
def trading() -> InMemoryTradingEngine:
    return InMemoryTradingEngine()


@pytest_asyncio.fixture
async def bridge(session_factory, adapters, trading, test_settings) -> AsyncGenerator[Bridge, None]:
    """Bridge wired to the test database, simulated chains and in-memory balances.

    Withdrawals are not processed in the background; tests drive them.
    """
    clear_symbol_locks()
    clear_user_locks()
    instance = Bridge(
        session_factory=session_factory,
        trading_engine=trading,
        adapter_provider=lambda network: adapters[network.lower()],
        settings=test_settings,
        encryptor=SecretEncryptor(generate_master_key()),
        auto_process=False,
    )
    await instance.seed()

    yield instance

    await instance.stop()
    clear_symbol_locks()
    clear_user_locks()


@pytest.fixture
def tracked(bridge, monkeypatch) -> list[int]:
    """Record deposits handed to the tracker instead of starting timer tasks."""
    started: list[int] = []
    monkeypatch.setattr(bridge.tracker, "start", started.append)
    return started


@pytest.fixture
def create_address(session_factory):
    """Store a deposit address without starting a poll."""

    async def _create(user_id: str, network: str, address: str):
        async with get_db(session_factory) as session:
            return await LedgerRepository(session).create_deposit_address(user_id, network, address, None)

    return _create


@pytest.fixture
def fund(trading):
    """Give a user a tradable wrapped balance."""

    async def _fund(user_id: str, symbol: str, amount: str) -> None:
        await trading.credit(user_id, symbol, Decimal(amount), f"test-fund:{user_id}:{symbol}:{amount}")

    return _fund
