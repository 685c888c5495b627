"""Multi-chain custodial bridge with 1:1 wrapped assets."""

__version__ = "0.1.0"
