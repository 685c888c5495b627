"""Deposit address registry.

Issues one active deposit address per (user, network). Concurrent requests
for the same pair converge on the first stored row: the partial unique index
rejects the second insert and the loser reads the winner back.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.adapters.base import NetworkAdapter
from rbridge.adapters.factory import get_adapter
from rbridge.crypto import SecretEncryptor, get_encryptor
from rbridge.errors import AdapterError, ValidationError
from rbridge.ledger.database import get_db
from rbridge.ledger.models import DepositAddress
from rbridge.ledger.repository import LedgerRepository
from rbridge.networks import is_supported_network, supported_networks
from rbridge.services.detector import DepositDetector

logger = logging.getLogger(__name__)


class AddressRegistry:
    """Creates, looks up and deactivates deposit addresses."""

    def __init__(
        self,
        detector: Optional[DepositDetector] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapter_provider: Callable[[str], NetworkAdapter] = get_adapter,
        encryptor: Optional[SecretEncryptor] = None,
    ):
        self.detector = detector
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self.encryptor = encryptor or get_encryptor()

    async def get_or_create_address(self, user_id: str, network: str) -> DepositAddress:
        """Return the user's active address on ``network``, creating it if needed.

        Raises:
            ValidationError: If the network is not supported
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not is_supported_network(network):
            raise ValidationError(f"Unsupported network: {network}")
        network = network.lower()

        async with get_db(self.session_factory) as session:
            record = await LedgerRepository(session).get_active_address(user_id, network)

        if record is None:
            record = await self._create(user_id, network)

        if self.detector is not None:
            self.detector.start_monitoring(network, record.address)
        return record

    async def get_or_create_addresses(
        self, user_id: str, networks: Optional[list[str]] = None
    ) -> dict[str, Optional[DepositAddress]]:
        """Issue the user's addresses on several networks (all supported by default).

        A network whose adapter fails maps to None; the others are still issued.

        Raises:
            ValidationError: If any requested network is not supported
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if networks is None:
            networks = supported_networks()
        unsupported = [n for n in networks if not is_supported_network(n)]
        if unsupported:
            raise ValidationError(f"Unsupported network: {', '.join(unsupported)}")

        issued: dict[str, Optional[DepositAddress]] = {}
        for network in dict.fromkeys(n.lower() for n in networks):
            try:
                issued[network] = await self.get_or_create_address(user_id, network)
            except AdapterError as e:
                logger.error(f"Could not issue {network} address for user {user_id}: {e}")
                issued[network] = None
        return issued

    async def _create(self, user_id: str, network: str) -> DepositAddress:
        generated = await self.get_adapter(network).generate_address(user_id)
        encrypted = self.encryptor.encrypt(generated.secret_material)

        try:
            async with get_db(self.session_factory) as session:
                record = await LedgerRepository(session).create_deposit_address(
                    user_id, network, generated.address, encrypted
                )
        except IntegrityError:
            # Lost the race: another request stored an address first
            async with get_db(self.session_factory) as session:
                record = await LedgerRepository(session).get_active_address(user_id, network)
            if record is None:
                raise
            logger.info(f"Concurrent address request for {user_id}/{network}, using {record.address}")
            return record

        logger.info(f"Created {network} deposit address {record.address} for user {user_id}")
        return record

    async def get_user_addresses(self, user_id: str) -> list[DepositAddress]:
        async with get_db(self.session_factory) as session:
            return await LedgerRepository(session).get_user_addresses(user_id)

    async def deactivate_address(self, user_id: str, network: str) -> Optional[DepositAddress]:
        """Deactivate the active address and stop monitoring it. The row is kept."""
        async with get_db(self.session_factory) as session:
            record = await LedgerRepository(session).deactivate_address(user_id, network.lower())

        if record is not None and self.detector is not None:
            self.detector.stop_monitoring(record.network, record.address)
        return record

    def decrypt_secret(self, record: DepositAddress) -> Optional[str]:
        if not record.encrypted_secret:
            return None
        return self.encryptor.decrypt(record.encrypted_secret)
