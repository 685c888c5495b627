"""Wrapped-asset ledger: mint and burn with supply counters.

Counters are computed in Python Decimal and written with a compare-and-set
UPDATE, so they stay exact on every store and a burn can never drive supply
below zero, even if two writers slip past the per-symbol lock. The ledger
works inside the caller's session so that a deposit's ``wrapped_minted``
flag (or a withdrawal's ``wrapped_burned`` flag) commits together with the
supply change.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rbridge.errors import InsufficientSupply, NotFound
from rbridge.ledger.models import WrappedAssetContract, utcnow
from rbridge.networks import WRAPPED_ASSETS
from rbridge.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 5


class WrappedAssetLedger:
    """Supply bookkeeping for wrapped assets."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_contracts(self) -> int:
        """Create a contract row for every configured wrapped asset.

        Returns:
            Number of rows created
        """
        result = await self.session.execute(select(WrappedAssetContract.symbol))
        existing = set(result.scalars().all())

        created = 0
        for asset in WRAPPED_ASSETS.values():
            if asset.symbol in existing:
                continue
            self.session.add(
                WrappedAssetContract(
                    symbol=asset.symbol,
                    original_network=asset.network,
                    underlying_symbol=asset.underlying_symbol,
                    total_supply=Decimal("0"),
                    total_minted=Decimal("0"),
                    total_burned=Decimal("0"),
                )
            )
            created += 1

        if created:
            await self.session.flush()
            logger.info(f"Seeded {created} wrapped asset contracts")
        return created

    async def get_contract(self, symbol: str) -> WrappedAssetContract:
        stmt = (
            select(WrappedAssetContract)
            .where(WrappedAssetContract.symbol == symbol)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        contract = result.scalar_one_or_none()
        if contract is None:
            raise NotFound(f"Wrapped asset {symbol} not found")
        return contract

    async def list_contracts(self) -> list[WrappedAssetContract]:
        stmt = (
            select(WrappedAssetContract)
            .order_by(WrappedAssetContract.symbol)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mint(self, symbol: str, amount: Decimal) -> WrappedAssetContract:
        """Increase supply of ``symbol`` by ``amount``.

        Raises:
            ValueError: If amount is not positive
            NotFound: If the symbol has no contract row
        """
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive, got {amount}")

        contract = await self._apply(symbol, minted=amount)
        logger.info(f"Minted {amount} {symbol}")
        return contract

    async def burn(self, symbol: str, amount: Decimal) -> WrappedAssetContract:
        """Decrease supply of ``symbol`` by ``amount``.

        Raises:
            ValueError: If amount is not positive
            InsufficientSupply: If supply is smaller than amount
            NotFound: If the symbol has no contract row
        """
        if amount <= 0:
            raise ValueError(f"Burn amount must be positive, got {amount}")

        contract = await self._apply(symbol, burned=amount)
        logger.info(f"Burned {amount} {symbol}")
        return contract

    async def _apply(
        self,
        symbol: str,
        minted: Decimal = Decimal("0"),
        burned: Decimal = Decimal("0"),
    ) -> WrappedAssetContract:
        """Add to the counters of one contract and recompute its supply.

        The new counters are computed in Decimal from the values just read and
        written with an UPDATE that only matches if those values are unchanged.
        """
        for _ in range(_WRITE_ATTEMPTS):
            current = await self.get_contract(symbol)
            total_minted = current.total_minted + minted
            total_burned = current.total_burned + burned
            total_supply = total_minted - total_burned
            if total_supply < 0:
                raise InsufficientSupply(symbol, burned, current.total_supply)

            contract = WrappedAssetContract
            stmt = (
                update(contract)
                .where(
                    contract.symbol == symbol,
                    contract.total_minted == current.total_minted,
                    contract.total_burned == current.total_burned,
                )
                .values(
                    total_minted=total_minted,
                    total_burned=total_burned,
                    total_supply=total_supply,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                return await self.get_contract(symbol)
            logger.warning(f"Supply of {symbol} changed underneath an update, retrying")

        raise LockTimeoutError(f"Could not update supply of {symbol} after {_WRITE_ATTEMPTS} attempts")

    async def get_total_supply(self, symbol: str) -> Decimal:
        contract = await self.get_contract(symbol)
        return contract.total_supply
