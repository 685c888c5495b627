"""Deposit and withdrawal activity over a recent timeframe."""

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.errors import ValidationError
from rbridge.ledger.database import get_db
from rbridge.ledger.models import Deposit, Withdrawal, utcnow
from rbridge.ledger.repository import LedgerRepository

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _summarize(rows: list[tuple[str, str, str, str, Decimal]]) -> dict:
    groups: dict[tuple[str, str, str], list[Decimal]] = {}
    users = set()
    for network, token_symbol, status, user_id, amount in rows:
        groups.setdefault((network, token_symbol, str(status)), []).append(amount)
        users.add(user_id)

    by_asset = []
    for (network, token_symbol, status), amounts in sorted(groups.items()):
        by_asset.append(
            {
                "network": network,
                "token_symbol": token_symbol,
                "status": status,
                "count": len(amounts),
                "total_amount": _plain(sum(amounts, Decimal("0"))),
                "min_amount": _plain(min(amounts)),
                "max_amount": _plain(max(amounts)),
            }
        )

    return {"count": len(rows), "unique_users": len(users), "by_asset": by_asset}


async def activity_statistics(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    timeframe: str = "24h",
) -> dict:
    """Counts and amount sums of deposits and withdrawals created within ``timeframe``.

    Raises:
        ValidationError: If the timeframe is not one of TIMEFRAMES
    """
    window = TIMEFRAMES.get(timeframe)
    if window is None:
        raise ValidationError(f"Invalid timeframe: {timeframe} (expected one of {', '.join(TIMEFRAMES)})")

    since = utcnow() - window
    async with get_db(session_factory) as session:
        repo = LedgerRepository(session)
        deposits = await repo.get_activity_since(Deposit, since)
        withdrawals = await repo.get_activity_since(Withdrawal, since)

    return {
        "timeframe": timeframe,
        "since": since.isoformat(),
        "deposits": _summarize(deposits),
        "withdrawals": _summarize(withdrawals),
    }
