"""Simulated network adapter for dry-run mode and tests.

Keeps balances, transactions and the chain height in memory. Behaves like the
real adapter of the network's family: Bitcoin and Solana list incoming
transfers, EVM networks only expose balances.
"""

import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from rbridge.adapters.base import (
    GeneratedAddress,
    IncomingTransfer,
    NetworkAdapter,
    TransactionStatus,
    TxState,
)
from rbridge.adapters.bitcoin import generate_bitcoin_address, validate_bitcoin_address
from rbridge.adapters.evm import generate_evm_address, validate_evm_address
from rbridge.adapters.solana import generate_solana_address, validate_solana_address
from rbridge.errors import AdapterError, PermanentAdapterError, TransientAdapterError
from rbridge.networks import ChainFamily

logger = logging.getLogger(__name__)

_GENERATORS = {
    ChainFamily.EVM: generate_evm_address,
    ChainFamily.SOLANA: generate_solana_address,
    ChainFamily.UTXO: generate_bitcoin_address,
}

_VALIDATORS = {
    ChainFamily.EVM: validate_evm_address,
    ChainFamily.SOLANA: validate_solana_address,
    ChainFamily.UTXO: validate_bitcoin_address,
}


@dataclass
class SimulatedTx:
    tx_hash: str
    to_address: str
    token_symbol: str
    amount: Decimal
    block_number: Optional[int] = None  # None while in the mempool
    failed: bool = False
    from_address: Optional[str] = None


@dataclass
class SentTransfer:
    from_address: str
    to_address: str
    amount: Decimal
    asset: str
    tx_hash: str


class SimulatedAdapter(NetworkAdapter):
    """In-memory chain for one network.

    Example:
        adapter = SimulatedAdapter("bitcoin")
        tx_hash = adapter.inject_deposit(address, Decimal("0.01"))
        adapter.advance_blocks(3)
    """

    def __init__(
        self,
        network: str,
        start_height: int = 1000,
        supports_transfer_listing: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(network, **kwargs)
        self.family = self.config.family
        if supports_transfer_listing is None:
            supports_transfer_listing = self.family in (ChainFamily.UTXO, ChainFamily.SOLANA)
        self.supports_transfer_listing = supports_transfer_listing

        self.height = start_height
        self.balances: dict[str, dict[str, Decimal]] = {}
        self.transactions: dict[str, SimulatedTx] = {}
        self.sent: list[SentTransfer] = []
        self._failures: list[AdapterError] = []
        self.fail_sends: Optional[AdapterError] = None

    # ======================
    # Test controls
    # ======================

    def inject_deposit(
        self,
        address: str,
        amount: Decimal,
        token_symbol: Optional[str] = None,
        tx_hash: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> str:
        """Add an incoming transfer to the mempool and credit the balance."""
        token_symbol = token_symbol or self.native_symbol
        tx_hash = tx_hash or f"sim{secrets.token_hex(30)}"
        self.transactions[tx_hash] = SimulatedTx(
            tx_hash=tx_hash,
            to_address=address,
            token_symbol=token_symbol,
            amount=amount,
            from_address=from_address,
        )
        address_balances = self.balances.setdefault(address, {})
        address_balances[token_symbol] = address_balances.get(token_symbol, Decimal("0")) + amount
        return tx_hash

    def advance_blocks(self, count: int = 1) -> int:
        """Mine ``count`` blocks; mempool transactions land in the first one."""
        for tx in self.transactions.values():
            if tx.block_number is None:
                tx.block_number = self.height + 1
        self.height += count
        return self.height

    def fail_transaction(self, tx_hash: str) -> None:
        self.transactions[tx_hash].failed = True

    def fail_next(self, error: Optional[AdapterError] = None, count: int = 1) -> None:
        """Make the next ``count`` chain reads raise ``error`` (transient by default)."""
        error = error or TransientAdapterError("simulated RPC timeout", self.network)
        self._failures.extend([error] * count)

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    # ======================
    # Capability
    # ======================

    async def generate_address(self, user_id: str) -> GeneratedAddress:
        return _GENERATORS[self.family]()

    def validate_address(self, address: str) -> bool:
        return _VALIDATORS[self.family](address)

    async def get_balance(self, address: str, asset: Optional[str] = None) -> Decimal:
        self._maybe_fail()
        token = self.token_for(asset)
        symbol = token.underlying_symbol if token else self.native_symbol
        return self.balances.get(address, {}).get(symbol, Decimal("0"))

    async def get_balances(self, address: str) -> dict[str, Decimal]:
        self._maybe_fail()
        balances = {self.native_symbol: self.balances.get(address, {}).get(self.native_symbol, Decimal("0"))}
        for token in self.tokens:
            symbol = token.underlying_symbol
            balances[symbol] = self.balances.get(address, {}).get(symbol, Decimal("0"))
        return balances

    async def get_block_height(self) -> int:
        self._maybe_fail()
        return self.height

    async def get_transaction(self, tx_ref: str) -> TransactionStatus:
        self._maybe_fail()
        tx = self.transactions.get(tx_ref)
        if tx is None:
            return TransactionStatus(tx_ref=tx_ref, status=TxState.NOT_FOUND)
        if tx.block_number is None:
            return TransactionStatus(tx_ref=tx_ref, status=TxState.PENDING)
        return TransactionStatus(
            tx_ref=tx_ref,
            status=TxState.FAILED if tx.failed else TxState.SUCCESS,
            confirmations=self.height - tx.block_number + 1,
            block_ref=tx.block_number,
        )

    async def list_incoming_transfers(self, address: str) -> list[IncomingTransfer]:
        if not self.supports_transfer_listing:
            raise PermanentAdapterError("Transfer listing not supported", self.network)
        self._maybe_fail()
        return [
            IncomingTransfer(
                tx_hash=tx.tx_hash,
                to_address=tx.to_address,
                token_symbol=tx.token_symbol,
                amount=tx.amount,
                confirmations=self.height - tx.block_number + 1 if tx.block_number else 0,
                block_number=tx.block_number,
                from_address=tx.from_address,
            )
            for tx in self.transactions.values()
            if tx.to_address == address and not tx.failed
        ]

    async def send_native(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        secret_material: Optional[str],
        asset: Optional[str] = None,
    ) -> str:
        if self.fail_sends is not None:
            raise self.fail_sends
        if not self.validate_address(to_address):
            raise PermanentAdapterError(f"Invalid destination address {to_address}", self.network)

        tx_hash = f"simsend{secrets.token_hex(28)}"
        self.sent.append(
            SentTransfer(
                from_address=from_address,
                to_address=to_address,
                amount=amount,
                asset=asset or self.native_symbol,
                tx_hash=tx_hash,
            )
        )
        logger.info(f"[simulated] Sent {amount} {asset or self.native_symbol} on {self.network} to {to_address}")
        return tx_hash
