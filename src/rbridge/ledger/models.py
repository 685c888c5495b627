"""SQLAlchemy models for the bridge ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


AMOUNT_SCALE = 18
_AMOUNT_QUANTUM = Decimal(10) ** -AMOUNT_SCALE


class Amount(TypeDecorator):
    """Exact decimal amount.

    PostgreSQL keeps NUMERIC(36, 18). SQLite has no exact decimal storage, so
    amounts are stored there as fixed-point strings with 18 places, which keeps
    equality comparisons in SQL working. Arithmetic on amounts happens in Python.
    """

    impl = Numeric(36, AMOUNT_SCALE)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, AMOUNT_SCALE, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        value = value.quantize(_AMOUNT_QUANTUM)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value) if isinstance(value, str) else Decimal(str(value))


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DetectionMethod(str, Enum):
    """How a deposit was observed."""

    TRANSACTION = "transaction"      # Listed by tx hash
    BALANCE_DELTA = "balance_delta"  # Inferred from a balance increase


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal."""

    PENDING = "pending"          # Created, tradable balance debited
    PROCESSING = "processing"    # Burn and send in progress
    COMPLETED = "completed"      # Native transfer broadcast
    FAILED = "failed"            # Failed at burn or send
    CANCELLED = "cancelled"      # Cancelled by user while pending


class FailureStage(str, Enum):
    """Where a failed withdrawal stopped."""

    BURN = "burn"  # Nothing burned; user was re-credited
    SEND = "send"  # Burned but not sent; needs compensation


class CompensationStatus(str, Enum):
    """Operator compensation state of a send-failed withdrawal."""

    REQUIRED = "required"
    RECREDITED = "recredited"
    RESENT = "resent"


class AlertKind(str, Enum):
    """Kinds of operator queue entries."""

    WITHDRAWAL_SEND_FAILED = "withdrawal_send_failed"
    MINT_MISMATCH = "mint_mismatch"
    BURN_MISMATCH = "burn_mismatch"
    DEPOSIT_STALLED = "deposit_stalled"
    CREDIT_FAILED = "credit_failed"
    WITHDRAWAL_INTERRUPTED = "withdrawal_interrupted"
    BALANCE_MISMATCH = "balance_mismatch"


class AlertSeverity(str, Enum):
    CONSISTENCY = "consistency"
    WARNING = "warning"


class DepositAddress(Base):
    """Deposit address issued to a user on one network.

    At most one active row per (user, network). Rows are deactivated, never
    deleted, so historical deposits stay attributable.
    """

    __tablename__ = "deposit_addresses"
    __table_args__ = (
        Index(
            "uq_deposit_addresses_active_user_network",
            "user_id",
            "network",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_deposit_addresses_network_address", "network", "address"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    encrypted_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Fernet encrypted
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Deposit(Base):
    """An observed incoming transfer to a deposit address."""

    __tablename__ = "deposits"
    __table_args__ = (
        Index("ix_deposits_status", "status"),
        Index("ix_deposits_to_address_token", "to_address", "token_symbol"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str] = mapped_column(String(128), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)  # native or token symbol
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    confirmations: Mapped[int] = mapped_column(default=0, nullable=False)
    required_confirmations: Mapped[int] = mapped_column(nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(nullable=True)  # Height at observation
    detection_method: Mapped[DetectionMethod] = mapped_column(
        String(20), default=DetectionMethod.TRANSACTION.value, nullable=False
    )
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.PENDING.value, nullable=False
    )
    wrapped_minted: Mapped[bool] = mapped_column(default=False, nullable=False)
    wrapped_amount: Mapped[Optional[Decimal]] = mapped_column(Amount, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    minted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stall window restarts here when an operator resumes tracking
    tracking_restarted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Withdrawal(Base):
    """A user request to move a wrapped asset back to its native chain."""

    __tablename__ = "withdrawals"
    __table_args__ = (Index("ix_withdrawals_status", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    to_address: Mapped[str] = mapped_column(String(128), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)  # wrapped symbol
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)  # burned and sent
    fee: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    wrapped_burned: Mapped[bool] = mapped_column(default=False, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(20), default=WithdrawalStatus.PENDING.value, nullable=False
    )
    failure_stage: Mapped[Optional[FailureStage]] = mapped_column(String(10), nullable=True)
    compensation_status: Mapped[Optional[CompensationStatus]] = mapped_column(
        String(20), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    burned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def total_debit(self) -> Decimal:
        """Amount taken from the user's tradable balance (amount + fee)."""
        return self.amount + self.fee


class WrappedAssetContract(Base):
    """Supply counters for one wrapped asset.

    Invariant: total_supply = total_minted - total_burned >= 0.
    """

    __tablename__ = "wrapped_asset_contracts"
    __table_args__ = (
        CheckConstraint("total_supply >= 0", name="ck_wrapped_supply_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    original_network: Mapped[str] = mapped_column(String(32), nullable=False)
    underlying_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    total_supply: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    total_minted: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    total_burned: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class NetworkStatus(Base):
    """Last observed reachability and height of a network."""

    __tablename__ = "network_status"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    is_online: Mapped[bool] = mapped_column(default=False, nullable=False)
    block_height: Mapped[Optional[int]] = mapped_column(nullable=True)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class OperatorAlert(Base):
    """Operator queue entry for events that need manual attention."""

    __tablename__ = "operator_alerts"
    __table_args__ = (Index("ix_operator_alerts_resolved", "resolved"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[AlertKind] = mapped_column(String(40), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(String(20), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)  # deposit, withdrawal, contract
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
