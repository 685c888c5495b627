"""EVM network adapter.

Covers Ethereum and every EVM-compatible network (BSC, Avalanche C-Chain,
Polygon, Arbitrum, Fantom, Linea, Unichain, opBNB, Base, Polygon zkEVM).
Reads go through plain JSON-RPC over httpx; sends are signed locally with
eth-account and broadcast with ``eth_sendRawTransaction``.

EVM nodes cannot list incoming transfers per address without an indexer, so
deposits on these networks are detected through balance deltas.
"""

import logging
import re
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_utils import is_checksum_address, to_checksum_address

from rbridge.adapters.base import (
    GeneratedAddress,
    NetworkAdapter,
    TransactionStatus,
    TxState,
    from_base_units,
    to_base_units,
)
from rbridge.errors import PermanentAdapterError
from rbridge.networks import ChainFamily

logger = logging.getLogger(__name__)

EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# ERC20 function selectors
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)
TRANSFER_SELECTOR = "a9059cbb"  # transfer(address,uint256)

NATIVE_TRANSFER_GAS = 21000
TOKEN_TRANSFER_GAS = 100000


def validate_evm_address(address: str) -> bool:
    """Validate an EVM address (0x + 40 hex chars, checksum if mixed case)."""
    if not address or not EVM_ADDRESS_RE.match(address):
        return False
    body = address[2:]
    if body.islower() or body.isupper():
        return True
    return is_checksum_address(address)


def generate_evm_address() -> GeneratedAddress:
    account = Account.create()
    return GeneratedAddress(address=account.address, secret_material=bytes(account.key).hex())


def encode_transfer(to_address: str, amount_units: int) -> str:
    """ABI-encode an ERC20 ``transfer(to, amount)`` call."""
    to_padded = to_address.lower().replace("0x", "").rjust(64, "0")
    amount_padded = hex(amount_units)[2:].rjust(64, "0")
    return f"0x{TRANSFER_SELECTOR}{to_padded}{amount_padded}"


class EvmAdapter(NetworkAdapter):
    """Adapter for EVM-compatible networks."""

    family = ChainFamily.EVM
    supports_transfer_listing = False

    async def generate_address(self, user_id: str) -> GeneratedAddress:
        generated = generate_evm_address()
        logger.debug(f"Generated {self.network} address {generated.address} for user {user_id}")
        return generated

    def validate_address(self, address: str) -> bool:
        return validate_evm_address(address)

    async def get_balance(self, address: str, asset: Optional[str] = None) -> Decimal:
        token = self.token_for(asset)

        if token is None:
            result = await self._rpc("eth_getBalance", [address, "latest"])
            return from_base_units(int(result or "0x0", 16), self.config.decimals)

        # balanceOf(address) eth_call
        padded = address.lower().replace("0x", "").rjust(64, "0")
        result = await self._rpc(
            "eth_call",
            [{"to": token.contract_address, "data": f"{BALANCE_OF_SELECTOR}{padded}"}, "latest"],
        )
        if not result or result == "0x":
            return Decimal("0")
        return from_base_units(int(result, 16), token.decimals)

    async def get_block_height(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        return int(result, 16)

    async def get_transaction(self, tx_ref: str) -> TransactionStatus:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_ref])

        if receipt is None:
            tx = await self._rpc("eth_getTransactionByHash", [tx_ref])
            if tx is None:
                return TransactionStatus(tx_ref=tx_ref, status=TxState.NOT_FOUND)
            return TransactionStatus(tx_ref=tx_ref, status=TxState.PENDING)

        block_number = int(receipt["blockNumber"], 16)
        height = await self.get_block_height()
        confirmations = max(height - block_number + 1, 0)
        status = TxState.SUCCESS if receipt.get("status") == "0x1" else TxState.FAILED

        return TransactionStatus(
            tx_ref=tx_ref,
            status=status,
            confirmations=confirmations,
            block_ref=block_number,
        )

    async def send_native(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        secret_material: Optional[str],
        asset: Optional[str] = None,
    ) -> str:
        if not secret_material:
            raise PermanentAdapterError("No signing key configured", self.network)
        if not self.validate_address(to_address):
            raise PermanentAdapterError(f"Invalid destination address {to_address}", self.network)

        account = Account.from_key(secret_material)
        if from_address and account.address.lower() != from_address.lower():
            raise PermanentAdapterError("Signing key does not match source address", self.network)

        token = self.token_for(asset)
        nonce = int(await self._rpc("eth_getTransactionCount", [account.address, "pending"]), 16)
        gas_price = int(await self._rpc("eth_gasPrice", []), 16)

        if token is None:
            tx = {
                "to": to_checksum_address(to_address),
                "value": to_base_units(amount, self.config.decimals),
                "gas": NATIVE_TRANSFER_GAS,
                "data": "0x",
            }
        else:
            tx = {
                "to": to_checksum_address(token.contract_address),
                "value": 0,
                "gas": TOKEN_TRANSFER_GAS,
                "data": encode_transfer(to_address, to_base_units(amount, token.decimals)),
            }
        tx.update({"gasPrice": gas_price, "nonce": nonce, "chainId": self.config.chain_id})

        signed = account.sign_transaction(tx)
        raw_tx = "0x" + bytes(signed.raw_transaction).hex()

        tx_hash = await self._rpc("eth_sendRawTransaction", [raw_tx], reject_is_permanent=True)
        logger.info(f"Broadcast {amount} {asset or self.native_symbol} on {self.network}: {tx_hash}")
        return tx_hash
