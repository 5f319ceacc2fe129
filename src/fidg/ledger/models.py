"""SQLAlchemy models for the ledger."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExactDecimal(TypeDecorator):
    """Decimal amount stored as plain text and read back exactly."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ProvisioningState(str, Enum):
    """Sign-up saga progress for an account."""

    KEY_GENERATED = "key_generated"
    WALLET_PREDICTED = "wallet_predicted"
    WALLET_DEPLOYED = "wallet_deployed"
    LEDGER_LINKED = "ledger_linked"
    GAS_FUNDED = "gas_funded"              # Terminal success
    DEGRADED = "account_created_degraded"  # Identity exists, no wallet


class TransactionKind(str, Enum):
    """Kind of ledger entry."""

    WALLET_CREATED = "wallet-created"
    SENT_FUNDS = "sent-funds"
    INVESTED = "invested"
    WITHDRAWN = "withdrawn"


class TransactionStatus(str, Enum):
    """Outcome recorded for a ledger entry."""

    SUCCESS = "success"
    FAILED = "failed"


class Account(Base):
    """User account with custody record and savings balances.

    The wallet address is empty until the Safe is deployed and never
    changes once set.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Custody
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    custody: Mapped[str] = mapped_column(Text, nullable=False)  # iv_hex:ciphertext_hex

    # Wallet
    wallet_address: Mapped[str] = mapped_column(String(42), default="", nullable=False)
    wallet_salt: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    provisioning_state: Mapped[str] = mapped_column(
        String(40), default=ProvisioningState.KEY_GENERATED.value, nullable=False
    )
    gas_funded: Mapped[bool] = mapped_column(default=False)
    gas_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Savings
    savings_balance: Mapped[Decimal] = mapped_column(ExactDecimal(80), default=Decimal("0"))
    total_deposited: Mapped[Decimal] = mapped_column(ExactDecimal(80), default=Decimal("0"))
    total_withdrawn: Mapped[Decimal] = mapped_column(ExactDecimal(80), default=Decimal("0"))
    savings_start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_address)


class TransactionRecord(Base):
    """Append-only ledger entry. Never updated after creation."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_account_timestamp", "account_id", "timestamp"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(ExactDecimal(80), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    from_address: Mapped[str] = mapped_column(String(255), nullable=False)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.SUCCESS.value, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    description: Mapped[str] = mapped_column(Text, default="")
    explorer_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
