"""Request and response models shared by the API routes.

Amounts cross the API as decimal strings.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from rbridge.ledger.models import Deposit, Withdrawal


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DepositOut(BaseModel):
    """Deposit as returned by the API."""

    id: int
    user_id: str
    network: str
    from_address: Optional[str] = None
    to_address: str
    tx_hash: str
    token_symbol: str
    amount: str
    confirmations: int
    required_confirmations: int
    status: str
    wrapped_minted: bool
    wrapped_amount: Optional[str] = None
    created_at: Optional[str] = None
    confirmed_at: Optional[str] = None
    minted_at: Optional[str] = None
    tracking_restarted_at: Optional[str] = None

    @classmethod
    def from_model(cls, deposit: Deposit) -> "DepositOut":
        return cls(
            id=deposit.id,
            user_id=deposit.user_id,
            network=deposit.network,
            from_address=deposit.from_address,
            to_address=deposit.to_address,
            tx_hash=deposit.tx_hash,
            token_symbol=deposit.token_symbol,
            amount=str(deposit.amount),
            confirmations=deposit.confirmations,
            required_confirmations=deposit.required_confirmations,
            status=str(deposit.status),
            wrapped_minted=deposit.wrapped_minted,
            wrapped_amount=str(deposit.wrapped_amount) if deposit.wrapped_amount is not None else None,
            created_at=_iso(deposit.created_at),
            confirmed_at=_iso(deposit.confirmed_at),
            minted_at=_iso(deposit.minted_at),
            tracking_restarted_at=_iso(deposit.tracking_restarted_at),
        )


class WithdrawalOut(BaseModel):
    """Withdrawal as returned by the API."""

    id: int
    user_id: str
    network: str
    to_address: str
    token_symbol: str
    amount: str
    fee: str
    wrapped_burned: bool
    tx_hash: Optional[str] = None
    status: str
    failure_stage: Optional[str] = None
    compensation_status: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    burned_at: Optional[str] = None
    sent_at: Optional[str] = None

    @classmethod
    def from_model(cls, withdrawal: Withdrawal) -> "WithdrawalOut":
        return cls(
            id=withdrawal.id,
            user_id=withdrawal.user_id,
            network=withdrawal.network,
            to_address=withdrawal.to_address,
            token_symbol=withdrawal.token_symbol,
            amount=str(withdrawal.amount),
            fee=str(withdrawal.fee),
            wrapped_burned=withdrawal.wrapped_burned,
            tx_hash=withdrawal.tx_hash,
            status=str(withdrawal.status),
            failure_stage=withdrawal.failure_stage,
            compensation_status=withdrawal.compensation_status,
            error_message=withdrawal.error_message,
            created_at=_iso(withdrawal.created_at),
            burned_at=_iso(withdrawal.burned_at),
            sent_at=_iso(withdrawal.sent_at),
        )


class WithdrawalRequest(BaseModel):
    """Request to withdraw a wrapped asset to its native network."""

    user_id: str = Field(..., min_length=1, max_length=64)
    network: str = Field(..., min_length=2, max_length=32)
    symbol: str = Field(..., min_length=2, max_length=20, description="Wrapped symbol, e.g. rBTC")
    amount: str = Field(..., description="Amount as decimal string")
    to_address: str = Field(..., min_length=20, max_length=128)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        """Validate amount is a positive decimal number."""
        try:
            amount = Decimal(v)
        except InvalidOperation:
            raise ValueError(f"Invalid amount format: {v}")
        if not amount.is_finite() or amount <= 0:
            raise ValueError("Amount must be positive")
        return v

    @field_validator("network")
    @classmethod
    def normalize_network(cls, v: str) -> str:
        return v.strip().lower()
