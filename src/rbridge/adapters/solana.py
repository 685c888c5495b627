"""Solana network adapter.

Reads use the Solana JSON-RPC API. Incoming transfers are listed with
``getSignaturesForAddress`` + ``getTransaction`` and parsed from the
pre/post lamport balances. Sends are delegated to the custody vendor API,
which holds the hot wallet key.
"""

import logging
import secrets
from decimal import Decimal
from typing import Optional

import base58
from bip_utils import Bip44, Bip44Changes, Bip44Coins

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

SIGNATURE_PAGE_SIZE = 25


def validate_solana_address(address: str) -> bool:
    """A Solana address is a base58-encoded 32-byte public key."""
    if not address or not 32 <= len(address) <= 44:
        return False
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


def generate_solana_address() -> GeneratedAddress:
    """Derive m/44'/501'/0'/0' from a fresh random seed."""
    seed = secrets.token_bytes(64)
    ctx = Bip44.FromSeed(seed, Bip44Coins.SOLANA).Purpose().Coin().Account(0).Change(
        Bip44Changes.CHAIN_EXT
    )
    return GeneratedAddress(
        address=ctx.PublicKey().ToAddress(),
        secret_material=ctx.PrivateKey().Raw().ToHex(),
    )


class SolanaAdapter(NetworkAdapter):
    """Adapter for Solana."""

    family = ChainFamily.SOLANA
    supports_transfer_listing = True

    def __init__(
        self,
        network: str,
        rpc_url: str = "",
        timeout: float = 20.0,
        max_backoff: float = 600.0,
        custody_url: str = "",
        custody_token: str = "",
    ):
        super().__init__(network, rpc_url, timeout, max_backoff)
        self.custody_url = custody_url.rstrip("/")
        self.custody_token = custody_token

    async def generate_address(self, user_id: str) -> GeneratedAddress:
        return generate_solana_address()

    def validate_address(self, address: str) -> bool:
        return validate_solana_address(address)

    async def get_balance(self, address: str, asset: Optional[str] = None) -> Decimal:
        token = self.token_for(asset)

        if token is None:
            result = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
            lamports = (result or {}).get("value", 0)
            return from_base_units(lamports, self.config.decimals)

        # SPL token: sum all token accounts of the owner for this mint
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [address, {"mint": token.contract_address}, {"encoding": "jsonParsed"}],
        )
        total = Decimal("0")
        for account in (result or {}).get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += Decimal(info["tokenAmount"]["uiAmountString"])
        return total

    async def get_block_height(self) -> int:
        return int(await self._rpc("getSlot", [{"commitment": "confirmed"}]))

    async def get_transaction(self, tx_ref: str) -> TransactionStatus:
        result = await self._rpc(
            "getSignatureStatuses", [[tx_ref], {"searchTransactionHistory": True}]
        )
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]

        if status is None:
            return TransactionStatus(tx_ref=tx_ref, status=TxState.NOT_FOUND)
        if status.get("err"):
            return TransactionStatus(tx_ref=tx_ref, status=TxState.FAILED, block_ref=status.get("slot"))

        # Finalized signatures report confirmations as null
        if status.get("confirmationStatus") == "finalized":
            confirmations = self.config.required_confirmations
        else:
            confirmations = status.get("confirmations") or 0

        return TransactionStatus(
            tx_ref=tx_ref,
            status=TxState.SUCCESS,
            confirmations=confirmations,
            block_ref=status.get("slot"),
        )

    async def list_incoming_transfers(self, address: str) -> list[IncomingTransfer]:
        signatures = await self._rpc(
            "getSignaturesForAddress", [address, {"limit": SIGNATURE_PAGE_SIZE}]
        )

        transfers = []
        for sig_info in signatures or []:
            if sig_info.get("err"):
                continue
            tx_data = await self._rpc(
                "getTransaction",
                [
                    sig_info["signature"],
                    {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0},
                ],
            )
            if not tx_data:
                continue
            transfer = self._parse_transaction(tx_data, address, sig_info["signature"])
            if transfer:
                transfers.append(transfer)

        return transfers

    def _parse_transaction(
        self, tx_data: dict, address: str, signature: str
    ) -> Optional[IncomingTransfer]:
        """Parse the lamport delta of ``address`` out of a jsonParsed transaction."""
        meta = tx_data.get("meta") or {}
        if meta.get("err"):
            return None

        pre_balances = meta.get("preBalances", [])
        post_balances = meta.get("postBalances", [])
        accounts = tx_data.get("transaction", {}).get("message", {}).get("accountKeys", [])

        sender = None
        for i, account in enumerate(accounts):
            account_key = account.get("pubkey") if isinstance(account, dict) else account
            if i == 0:
                sender = account_key
            if account_key != address or i >= len(pre_balances) or i >= len(post_balances):
                continue
            delta = post_balances[i] - pre_balances[i]
            if delta <= 0:
                return None
            return IncomingTransfer(
                tx_hash=signature,
                to_address=address,
                token_symbol=self.native_symbol,
                amount=from_base_units(delta, self.config.decimals),
                block_number=tx_data.get("slot"),
                from_address=sender if sender != address else None,
            )

        return None

    async def send_native(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        secret_material: Optional[str],
        asset: Optional[str] = None,
    ) -> str:
        if not self.custody_url:
            raise PermanentAdapterError("Solana custody API is not configured", self.network)
        if not self.validate_address(to_address):
            raise PermanentAdapterError(f"Invalid destination address {to_address}", self.network)

        headers = {"Authorization": f"Bearer {self.custody_token}"} if self.custody_token else {}
        response = await self._request(
            "POST",
            f"{self.custody_url}/transfers",
            json={
                "from": from_address,
                "to": to_address,
                "amount": str(amount),
                "asset": asset or self.native_symbol,
            },
            headers=headers,
        )
        signature = response.json().get("signature")
        if not signature:
            raise TransientAdapterError("Custody API returned no signature", self.network)

        logger.info(f"Submitted {amount} {asset or self.native_symbol} via custody: {signature}")
        return signature
