"""Concurrency control for supply changes and user balance operations.

Provides per-symbol locking so that every mint and burn on one wrapped asset
is serialised while different symbols proceed concurrently, and per-user
locking so that a withdrawal's checks, debit and insert happen as one step.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registries: symbol -> asyncio.Lock, user_id -> asyncio.Lock
_symbol_locks: dict[str, asyncio.Lock] = {}
_user_locks: dict[str, asyncio.Lock] = {}


def _get_lock(registry: dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
    # Creation happens without an await, so the registry needs no lock of its own
    lock = registry.get(key)
    if lock is None:
        lock = asyncio.Lock()
        registry[key] = lock
    return lock


def get_symbol_lock(symbol: str) -> asyncio.Lock:
    """Get or create the lock for a wrapped asset symbol."""
    return _get_lock(_symbol_locks, symbol)


def get_user_lock(user_id: str) -> asyncio.Lock:
    """Get or create the lock for a user's tradable balance."""
    return _get_lock(_user_locks, user_id)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


@asynccontextmanager
async def _hold(lock: asyncio.Lock, label: str, timeout: Optional[float], operation: str):
    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        logger.warning(f"Lock timeout for {label} after {timeout}s: {operation}")
        raise LockTimeoutError(f"Could not acquire lock for {label} within {timeout}s")

    logger.debug(f"Lock acquired for {label}: {operation}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released for {label}: {operation}")


@asynccontextmanager
async def symbol_lock(
    symbol: str,
    timeout: Optional[float] = 30.0,
    operation: str = "supply_change",
):
    """Hold the single-writer lock for ``symbol``.

    Args:
        symbol: Wrapped asset symbol (e.g. rBTC)
        timeout: Maximum time to wait for lock (None = wait forever)
        operation: Description for logging

    Example:
        async with symbol_lock("rBTC", operation="mint"):
            await ledger.mint("rBTC", amount)
    """
    async with _hold(get_symbol_lock(symbol), symbol, timeout, operation):
        yield


@asynccontextmanager
async def user_lock(
    user_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
):
    """Hold the lock for one user's balance operations.

    Example:
        async with user_lock(user_id, operation="withdraw"):
            # Check limits, debit, record the withdrawal
            pass
    """
    async with _hold(get_user_lock(user_id), f"user {user_id}", timeout, operation):
        yield


def clear_symbol_locks() -> None:
    """Clear all symbol locks (useful for testing)."""
    _symbol_locks.clear()


def clear_user_locks() -> None:
    """Clear all user locks (useful for testing)."""
    _user_locks.clear()
