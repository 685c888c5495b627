"""Error taxonomy shared by adapters, services and the API layer."""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class AdapterError(BridgeError):
    """A classified failure raised by a network adapter."""

    transient = False

    def __init__(self, message: str, network: Optional[str] = None):
        self.network = network
        super().__init__(f"[{network}] {message}" if network else message)


class TransientAdapterError(AdapterError):
    """RPC timeout, node unavailable, rate limited. Caller retries later."""

    transient = True


class PermanentAdapterError(AdapterError):
    """Malformed address, unsupported operation, rejected transaction. Never retry."""


class ValidationError(BridgeError):
    """A request was rejected before any side effect."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InsufficientBalance(ValidationError):
    """The user's available wrapped balance does not cover the request."""


class InsufficientSupply(BridgeError):
    """A burn would drive a wrapped asset's total supply below zero."""

    def __init__(self, symbol: str, amount, supply=None):
        self.symbol = symbol
        self.amount = amount
        self.supply = supply
        super().__init__(
            f"Cannot burn {amount} {symbol}: supply is {supply if supply is not None else 'unknown'}"
        )


class NotFound(BridgeError):
    """Requested record does not exist."""


class InvalidStateTransition(BridgeError):
    """Requested state change is not allowed from the record's current state."""
