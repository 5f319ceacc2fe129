"""Ledger module for accounts, savings balances and transaction history."""

from fidg.ledger.database import close_db, get_session_factory, init_db
from fidg.ledger.models import (
    Account,
    ProvisioningState,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from fidg.ledger.store import AccountPatch, LedgerStore

__all__ = [
    # Models
    "Account",
    "TransactionRecord",
    # Enums
    "ProvisioningState",
    "TransactionKind",
    "TransactionStatus",
    # Database
    "close_db",
    "get_session_factory",
    "init_db",
    # Store
    "AccountPatch",
    "LedgerStore",
]
