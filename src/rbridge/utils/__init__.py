"""Utility modules for rbridge."""

from rbridge.utils.locks import LockTimeoutError, get_symbol_lock, symbol_lock

__all__ = ["LockTimeoutError", "get_symbol_lock", "symbol_lock"]
