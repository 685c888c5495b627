"""Trading engine interface.

The trading engine owns users' tradable balances. The bridge only emits
credits (on deposit settlement or refund) and debits (on withdrawal request),
and asks for the available balance during withdrawal validation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from rbridge.errors import InsufficientBalance, TransientAdapterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositSettled:
    """Event emitted once a deposit's wrapped asset has been minted."""

    user_id: str
    symbol: str
    amount: Decimal
    deposit_id: int


class TradingEngine(ABC):
    """Client for the external trading engine."""

    @abstractmethod
    async def get_available_balance(self, user_id: str, symbol: str) -> Decimal:
        """Tradable (not reserved) balance of a wrapped asset."""
        pass

    @abstractmethod
    async def credit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        """Add to a user's tradable balance. Idempotent per reference."""
        pass

    @abstractmethod
    async def debit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        """Take from a user's tradable balance.

        Raises:
            InsufficientBalance: If the available balance is too small
        """
        pass

    async def publish_settlement(self, event: DepositSettled) -> None:
        """Deliver a DepositSettled event (default: credit the user)."""
        await self.credit(event.user_id, event.symbol, event.amount, f"deposit:{event.deposit_id}")

    async def close(self) -> None:
        pass


class InMemoryTradingEngine(TradingEngine):
    """Balances kept in process memory. For development and tests."""

    def __init__(self):
        self.balances: dict[tuple[str, str], Decimal] = {}
        self._applied: set[str] = set()

    async def get_available_balance(self, user_id: str, symbol: str) -> Decimal:
        return self.balances.get((user_id, symbol), Decimal("0"))

    async def credit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        if reference in self._applied:
            logger.debug(f"Credit {reference} already applied")
            return
        key = (user_id, symbol)
        self.balances[key] = self.balances.get(key, Decimal("0")) + amount
        self._applied.add(reference)

    async def debit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        if reference in self._applied:
            return
        key = (user_id, symbol)
        available = self.balances.get(key, Decimal("0"))
        if available < amount:
            raise InsufficientBalance(
                f"Insufficient {symbol} balance: available {available}, required {amount}"
            )
        self.balances[key] = available - amount
        self._applied.add(reference)


class HttpTradingEngine(TradingEngine):
    """Trading engine reached over HTTP."""

    def __init__(self, base_url: str, token: str = "", timeout: float = 20.0):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"Trading engine unreachable: {e}")
        if response.status_code >= 500:
            raise TransientAdapterError(f"Trading engine error {response.status_code}")
        return response

    async def get_available_balance(self, user_id: str, symbol: str) -> Decimal:
        try:
            response = await self._client.get(f"/users/{user_id}/balances/{symbol}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"Trading engine balance query failed: {e}")
        return Decimal(str(response.json().get("available", "0")))

    async def credit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        response = await self._post(
            "/balances/credit",
            {"user_id": user_id, "symbol": symbol, "amount": str(amount), "reference": reference},
        )
        if response.status_code not in (200, 201, 409):  # 409: reference already applied
            raise TransientAdapterError(f"Credit rejected: {response.status_code} {response.text}")

    async def debit(self, user_id: str, symbol: str, amount: Decimal, reference: str) -> None:
        response = await self._post(
            "/balances/debit",
            {"user_id": user_id, "symbol": symbol, "amount": str(amount), "reference": reference},
        )
        if response.status_code == 422:
            raise InsufficientBalance(f"Insufficient {symbol} balance")
        if response.status_code not in (200, 201, 409):
            raise TransientAdapterError(f"Debit rejected: {response.status_code} {response.text}")

    async def publish_settlement(self, event: DepositSettled) -> None:
        response = await self._post(
            "/events/deposit-settled",
            {
                "user_id": event.user_id,
                "symbol": event.symbol,
                "amount": str(event.amount),
                "deposit_id": event.deposit_id,
            },
        )
        if response.status_code not in (200, 201, 202, 409):
            raise TransientAdapterError(
                f"Settlement event rejected: {response.status_code} {response.text}"
            )

    async def close(self) -> None:
        await self._client.aclose()


def create_trading_engine(url: Optional[str] = None, token: str = "") -> TradingEngine:
    """Build the HTTP client when a URL is configured, otherwise the in-memory engine."""
    if url:
        return HttpTradingEngine(url, token)
    logger.warning("TRADING_ENGINE_URL not set - using in-memory balances")
    return InMemoryTradingEngine()
