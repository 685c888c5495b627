"""Base interface for network adapters.

A network adapter is the only place that talks to an external chain. Every
failure it raises is classified as either transient (retry next cycle) or
permanent (never retry); no raw ``httpx`` error crosses this boundary.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from rbridge.errors import PermanentAdapterError, TransientAdapterError
from rbridge.networks import ChainFamily, NetworkConfig, WrappedAsset, get_network, token_assets_on_network

logger = logging.getLogger(__name__)

BalanceSnapshot = dict[str, Decimal]
SnapshotCallback = Callable[[BalanceSnapshot], Awaitable[None]]

# JSON-RPC error codes that indicate an overloaded or lagging node
TRANSIENT_RPC_CODES = {-32005, -32603, -32002, -32004, 429}


class TxState(str, Enum):
    """Observed state of an on-chain transaction."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class GeneratedAddress:
    """A freshly generated address and its secret material."""

    address: str
    secret_material: str


@dataclass
class TransactionStatus:
    """Confirmation state of a transaction."""

    tx_ref: str
    status: TxState
    confirmations: int = 0
    block_ref: Optional[int] = None


@dataclass
class IncomingTransfer:
    """A transfer into a monitored address, as listed by the chain."""

    tx_hash: str
    to_address: str
    token_symbol: str
    amount: Decimal
    confirmations: int = 0
    block_number: Optional[int] = None
    from_address: Optional[str] = None


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a decimal amount into integer base units (wei, lamports, satoshi)."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value())


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


class PollHandle:
    """Cancellable handle of a running address poll."""

    def __init__(self, task: asyncio.Task, address: str):
        self._task = task
        self.address = address

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def wait(self) -> None:
        """Wait for the poll task to finish (after cancel or a permanent error)."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class NetworkAdapter(ABC):
    """Abstract base class for network adapters.

    One instance per network, resolved once at startup by the factory.
    """

    family: ChainFamily
    supports_transfer_listing: bool = False

    def __init__(
        self,
        network: str,
        rpc_url: str = "",
        timeout: float = 20.0,
        max_backoff: float = 600.0,
    ):
        self.network = network
        self.config: NetworkConfig = get_network(network)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_backoff = max_backoff
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def native_symbol(self) -> str:
        return self.config.native_symbol

    @property
    def tokens(self) -> list[WrappedAsset]:
        """Token assets (non-native) configured on this network."""
        return token_assets_on_network(self.network)

    def token_for(self, asset: Optional[str]) -> Optional[WrappedAsset]:
        """Resolve a token symbol; None means the native asset.

        Raises:
            PermanentAdapterError: If the asset is not configured on this network
        """
        if asset is None or asset == self.native_symbol:
            return None
        for token in self.tokens:
            if token.underlying_symbol == asset:
                return token
        raise PermanentAdapterError(f"Asset {asset} is not supported", self.network)

    # ======================
    # Capability
    # ======================

    @abstractmethod
    async def generate_address(self, user_id: str) -> GeneratedAddress:
        """Create a new deposit address with its secret material."""
        pass

    @abstractmethod
    async def get_balance(self, address: str, asset: Optional[str] = None) -> Decimal:
        """Balance of the native asset (or a configured token) at an address."""
        pass

    async def get_balances(self, address: str) -> BalanceSnapshot:
        """Native balance plus every configured token balance."""
        balances = {self.native_symbol: await self.get_balance(address)}
        for token in self.tokens:
            balances[token.underlying_symbol] = await self.get_balance(
                address, token.underlying_symbol
            )
        return balances

    @abstractmethod
    async def get_transaction(self, tx_ref: str) -> TransactionStatus:
        pass

    @abstractmethod
    async def get_block_height(self) -> int:
        pass

    async def list_incoming_transfers(self, address: str) -> list[IncomingTransfer]:
        """List transfers into ``address``.

        Only available when ``supports_transfer_listing`` is set.
        """
        raise PermanentAdapterError("Transfer listing not supported", self.network)

    @abstractmethod
    async def send_native(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        secret_material: Optional[str],
        asset: Optional[str] = None,
    ) -> str:
        """Sign and broadcast a transfer. Returns the transaction hash."""
        pass

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        pass

    # ======================
    # Polling
    # ======================

    def poll_address(
        self,
        address: str,
        on_change: SnapshotCallback,
        interval: float,
    ) -> PollHandle:
        """Start polling balances of ``address``.

        ``on_change`` receives the first snapshot and every snapshot that
        differs from the previously delivered one. Transient errors back off
        exponentially; a permanent error ends the poll.
        """
        task = asyncio.create_task(
            self._poll_loop(address, on_change, interval),
            name=f"poll:{self.network}:{address}",
        )
        return PollHandle(task, address)

    async def _poll_loop(self, address: str, on_change: SnapshotCallback, interval: float) -> None:
        previous: Optional[BalanceSnapshot] = None
        failures = 0

        while True:
            try:
                snapshot = await self.get_balances(address)
            except TransientAdapterError as e:
                failures += 1
                delay = min(interval * 2**failures, self.max_backoff)
                logger.warning(f"Poll of {self.network}:{address} failed ({e}), retrying in {delay}s")
                await asyncio.sleep(delay)
                continue
            except PermanentAdapterError as e:
                logger.error(f"Stopping poll of {self.network}:{address}: {e}")
                return

            failures = 0
            if snapshot != previous:
                try:
                    await on_change(snapshot)
                    previous = snapshot
                except Exception:
                    # Keep the old snapshot so the change is delivered again
                    logger.exception(f"Snapshot handler failed for {self.network}:{address}")

            await asyncio.sleep(interval)

    # ======================
    # HTTP helpers
    # ======================

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAdapterError(f"HTTP {response.status_code} from node", self.network)
        if response.status_code >= 400:
            raise PermanentAdapterError(
                f"HTTP {response.status_code}: {response.text[:200]}", self.network
            )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Perform an HTTP request, classifying failures."""
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientAdapterError(f"Timeout calling {url}: {e}", self.network)
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"Request to {url} failed: {e}", self.network)
        self._check_response(response)
        return response

    async def _rpc(
        self,
        method: str,
        params: list,
        url: Optional[str] = None,
        reject_is_permanent: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Call a JSON-RPC method and return its ``result``.

        Node-side errors are transient unless ``reject_is_permanent`` is set
        (used for broadcasts, where an error means the node refused the tx).
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        response = await self._request("POST", url or self.rpc_url, json=payload, **kwargs)
        try:
            data = response.json()
        except ValueError:
            raise TransientAdapterError(f"Invalid JSON from {method}", self.network)

        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", error) if isinstance(error, dict) else error
            if reject_is_permanent and code not in TRANSIENT_RPC_CODES:
                raise PermanentAdapterError(f"{method} rejected: {message}", self.network)
            raise TransientAdapterError(f"{method} error: {message}", self.network)

        return data.get("result")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
