"""Network adapters: one capability interface over 13 external networks."""

from rbridge.adapters.base import (
    GeneratedAddress,
    IncomingTransfer,
    NetworkAdapter,
    PollHandle,
    TransactionStatus,
    TxState,
)
from rbridge.adapters.factory import close_adapters, get_adapter

__all__ = [
    "GeneratedAddress",
    "IncomingTransfer",
    "NetworkAdapter",
    "PollHandle",
    "TransactionStatus",
    "TxState",
    "close_adapters",
    "get_adapter",
]
