"""Bitcoin network adapter.

Reads go through the Esplora REST API (Blockstream).
Docs: https://github.com/Blockstream/esplora/blob/master/API.md

Sends use the wallet of a Bitcoin Core node (``sendtoaddress``), which holds
the hot wallet keys.
"""

import logging
import secrets
from decimal import Decimal
from typing import Optional

import base58
import httpx
from bip_utils import Bip44Changes, Bip84, Bip84Coins, SegwitBech32Decoder

from rbridge.adapters.base import (
    GeneratedAddress,
    IncomingTransfer,
    NetworkAdapter,
    TransactionStatus,
    TxState,
    from_base_units,
)
from rbridge.errors import PermanentAdapterError, TransientAdapterError
from rbridge.networks import ChainFamily

logger = logging.getLogger(__name__)

SATOSHI = Decimal("0.00000001")

# Base58 version bytes of mainnet P2PKH and P2SH addresses
LEGACY_VERSIONS = {b"\x00": "1", b"\x05": "3"}

# Bitcoin Core wallet errors worth retrying (RPC_IN_WARMUP, RPC_CLIENT_NOT_CONNECTED)
TRANSIENT_NODE_CODES = {-28, -9}


def validate_bitcoin_address(address: str) -> bool:
    """Validate a mainnet bech32 (bc1...), P2PKH (1...) or P2SH (3...) address."""
    if not address:
        return False

    if address.lower().startswith("bc1"):
        try:
            SegwitBech32Decoder.Decode("bc", address)
        except Exception:
            return False
        return True

    if address[0] not in ("1", "3"):
        return False
    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(decoded) == 21 and LEGACY_VERSIONS.get(decoded[:1]) == address[0]


def generate_bitcoin_address() -> GeneratedAddress:
    """Derive a native SegWit address (m/84'/0'/0'/0/0) from a fresh random seed."""
    seed = secrets.token_bytes(64)
    ctx = (
        Bip84.FromSeed(seed, Bip84Coins.BITCOIN)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(0)
    )
    return GeneratedAddress(
        address=ctx.PublicKey().ToAddress(),
        secret_material=ctx.PrivateKey().ToWif(),
    )


class BitcoinAdapter(NetworkAdapter):
    """Adapter for Bitcoin (UTXO family)."""

    family = ChainFamily.UTXO
    supports_transfer_listing = True

    def __init__(
        self,
        network: str,
        rpc_url: str = "",
        timeout: float = 20.0,
        max_backoff: float = 600.0,
        node_url: str = "",
        node_user: str = "",
        node_password: str = "",
    ):
        super().__init__(network, rpc_url.rstrip("/"), timeout, max_backoff)
        self.node_url = node_url
        self.node_auth = (node_user, node_password) if node_user else None

    async def generate_address(self, user_id: str) -> GeneratedAddress:
        return generate_bitcoin_address()

    def validate_address(self, address: str) -> bool:
        return validate_bitcoin_address(address)

    async def get_balance(self, address: str, asset: Optional[str] = None) -> Decimal:
        self.token_for(asset)
        response = await self._request("GET", f"{self.rpc_url}/address/{address}")
        data = response.json()

        funded = 0
        spent = 0
        for stats in (data.get("chain_stats", {}), data.get("mempool_stats", {})):
            funded += stats.get("funded_txo_sum", 0)
            spent += stats.get("spent_txo_sum", 0)
        return from_base_units(funded - spent, self.config.decimals)

    async def get_block_height(self) -> int:
        response = await self._request("GET", f"{self.rpc_url}/blocks/tip/height")
        try:
            return int(response.text)
        except ValueError:
            raise TransientAdapterError(f"Unexpected tip height {response.text!r}", self.network)

    async def get_transaction(self, tx_ref: str) -> TransactionStatus:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.rpc_url}/tx/{tx_ref}/status")
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"Status request for {tx_ref} failed: {e}", self.network)

        # Esplora answers 400/404 for unknown txids
        if response.status_code in (400, 404):
            return TransactionStatus(tx_ref=tx_ref, status=TxState.NOT_FOUND)
        self._check_response(response)

        status = response.json()
        if not status.get("confirmed"):
            return TransactionStatus(tx_ref=tx_ref, status=TxState.PENDING)

        block_height = status["block_height"]
        height = await self.get_block_height()
        return TransactionStatus(
            tx_ref=tx_ref,
            status=TxState.SUCCESS,
            confirmations=max(height - block_height + 1, 0),
            block_ref=block_height,
        )

    async def list_incoming_transfers(self, address: str) -> list[IncomingTransfer]:
        response = await self._request("GET", f"{self.rpc_url}/address/{address}/txs")
        txs = response.json()
        if not txs:
            return []

        current_height = await self.get_block_height()
        transfers = []
        for tx in txs:
            transfer = self._parse_transaction(tx, address, current_height)
            if transfer:
                transfers.append(transfer)
        return transfers

    def _parse_transaction(
        self, tx: dict, address: str, current_height: int
    ) -> Optional[IncomingTransfer]:
        """Sum outputs paying ``address`` in an Esplora transaction."""
        txid = tx.get("txid")
        if not txid:
            return None

        # Outgoing sweeps also list the address; only count receipts
        for vin in tx.get("vin", []):
            if (vin.get("prevout") or {}).get("scriptpubkey_address") == address:
                return None

        satoshis = sum(
            vout.get("value", 0)
            for vout in tx.get("vout", [])
            if vout.get("scriptpubkey_address") == address
        )
        if satoshis <= 0:
            return None

        block_height = tx.get("status", {}).get("block_height")
        confirmations = current_height - block_height + 1 if block_height else 0

        from_address = None
        vin = tx.get("vin", [])
        if vin and vin[0].get("prevout"):
            from_address = vin[0]["prevout"].get("scriptpubkey_address")

        return IncomingTransfer(
            tx_hash=txid,
            to_address=address,
            token_symbol=self.native_symbol,
            amount=from_base_units(satoshis, self.config.decimals),
            confirmations=max(confirmations, 0),
            block_number=block_height,
            from_address=from_address,
        )

    async def send_native(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        secret_material: Optional[str],
        asset: Optional[str] = None,
    ) -> str:
        """Send from the node wallet. ``from_address`` is informational."""
        self.token_for(asset)
        if not self.validate_address(to_address):
            raise PermanentAdapterError(f"Invalid destination address {to_address}", self.network)

        client = await self._get_client()
        payload = {
            "jsonrpc": "1.0",
            "id": "rbridge",
            "method": "sendtoaddress",
            "params": [to_address, str(amount.quantize(SATOSHI))],
        }
        try:
            response = await client.post(self.node_url, json=payload, auth=self.node_auth)
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"Bitcoin node unreachable: {e}", self.network)

        # Bitcoin Core reports RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError:
            self._check_response(response)
            raise TransientAdapterError("Invalid JSON from bitcoin node", self.network)

        error = data.get("error")
        if error:
            if error.get("code") in TRANSIENT_NODE_CODES:
                raise TransientAdapterError(f"sendtoaddress: {error.get('message')}", self.network)
            raise PermanentAdapterError(f"sendtoaddress rejected: {error.get('message')}", self.network)
        self._check_response(response)

        txid = data.get("result")
        logger.info(f"Sent {amount} BTC to {to_address}: {txid}")
        return txid
