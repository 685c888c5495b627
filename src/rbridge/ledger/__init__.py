"""Ledger module for deposits, withdrawals and wrapped asset supply."""

from rbridge.ledger.database import get_db, init_db
from rbridge.ledger.models import (
    AlertKind,
    AlertSeverity,
    CompensationStatus,
    Deposit,
    DepositAddress,
    DepositStatus,
    DetectionMethod,
    FailureStage,
    NetworkStatus,
    OperatorAlert,
    Withdrawal,
    WithdrawalStatus,
    WrappedAssetContract,
)
from rbridge.ledger.repository import LedgerRepository
from rbridge.ledger.wrapped import WrappedAssetLedger

__all__ = [
    # Models
    "Deposit",
    "DepositAddress",
    "NetworkStatus",
    "OperatorAlert",
    "Withdrawal",
    "WrappedAssetContract",
    # Enums
    "AlertKind",
    "AlertSeverity",
    "CompensationStatus",
    "DepositStatus",
    "DetectionMethod",
    "FailureStage",
    "WithdrawalStatus",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
    "WrappedAssetLedger",
]
