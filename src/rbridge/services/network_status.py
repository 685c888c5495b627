"""Network status refresher.

Polls the block height of every network and keeps the ``network_status``
table current for the status endpoint.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.adapters.base import NetworkAdapter
from rbridge.adapters.factory import get_adapter
from rbridge.errors import AdapterError
from rbridge.ledger.database import get_db
from rbridge.ledger.repository import LedgerRepository
from rbridge.networks import supported_networks

logger = logging.getLogger(__name__)


class NetworkStatusService:
    """Tracks reachability and height of each network."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
    ):
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self._task: Optional[asyncio.Task] = None

    async def refresh_network(self, network: str) -> bool:
        try:
            height = await self.get_adapter(network).get_block_height()
        except AdapterError as e:
            logger.warning(f"{network} unreachable: {e}")
            async with get_db(self.session_factory) as session:
                await LedgerRepository(session).upsert_network_status(
                    network, is_online=False, error_message=str(e)
                )
            return False

        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).upsert_network_status(
                network, is_online=True, block_height=height
            )
        return True

    async def refresh(self) -> dict[str, bool]:
        """Refresh every network. Returns network -> online."""
        results = await asyncio.gather(*(self.refresh_network(n) for n in supported_networks()))
        return dict(zip(supported_networks(), results))

    async def snapshot(self) -> dict[str, dict]:
        """Current status of every network; never-checked networks are offline."""
        async with get_db(self.session_factory) as session:
            rows = {s.network: s for s in await LedgerRepository(session).get_network_statuses()}

        result = {}
        for network in supported_networks():
            row = rows.get(network)
            result[network] = {
                "online": bool(row and row.is_online),
                "block_height": row.block_height if row else None,
                "last_checked": row.last_checked.isoformat() if row and row.last_checked else None,
            }
        return result

    async def run(self, interval: float) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Network status refresh failed")
            await asyncio.sleep(interval)

    def start(self, interval: float) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(interval), name="network-status")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
