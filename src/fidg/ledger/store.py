"""Ledger store: the authoritative record of accounts and transaction history.

Each call is its own unit of work and commits on return, so a write that
succeeded stays written even if a later step of the caller fails.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidg.exceptions import AccountNotFound
from fidg.ledger.models import Account, TransactionKind, TransactionRecord, utcnow

logger = logging.getLogger(__name__)


class AccountPatch:
    """Accumulates field updates for one account and applies them on commit.

    Records added with ``append`` are written in the same unit of work as
    the field updates.

    Usage:
        patch = store.patch(account_id).set(wallet_address=address)
        patch.append(kind="wallet-created", from_address=label, to_address=address)
        account = await patch.commit()
    """

    def __init__(self, store: "LedgerStore", account_id: str):
        self._store = store
        self.account_id = account_id
        self.fields: dict = {}
        self.records: list[dict] = []

    def set(self, **fields) -> "AccountPatch":
        self.fields.update(fields)
        return self

    def append(self, **record) -> "AccountPatch":
        self.records.append(record)
        return self

    async def commit(self) -> Account:
        return await self._store.apply_patch(self.account_id, self.fields, self.records)


class LedgerStore:
    """Repository for account and transaction documents."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # Account operations
    async def get(self, account_id: str) -> Optional[Account]:
        """Get account by id."""
        async with self._session() as session:
            return await session.get(Account, account_id)

    async def get_by_email(self, email: str) -> Optional[Account]:
        """Get account by email (case-insensitive)."""
        async with self._session() as session:
            stmt = select(Account).where(Account.email == email.strip().lower())
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def create_account(self, **fields) -> Account:
        """Create an account document."""
        fields["email"] = fields["email"].strip().lower()
        async with self._session() as session:
            account = Account(**fields)
            session.add(account)
            await session.flush()
        logger.info(f"Ledger account {account.id} created for {account.email}")
        return account

    def patch(self, account_id: str) -> AccountPatch:
        """Start a patch for an account."""
        return AccountPatch(self, account_id)

    async def apply_patch(
        self, account_id: str, fields: dict, records: Optional[list[dict]] = None
    ) -> Account:
        """Apply field updates to an account and append any records with them.

        Raises:
            AccountNotFound: If the account does not exist
            ValueError: On an attempt to replace an already set wallet address
        """
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")

            new_wallet = fields.get("wallet_address")
            if new_wallet is not None and account.wallet_address and new_wallet != account.wallet_address:
                raise ValueError(
                    f"Wallet address of account {account_id} is already set to {account.wallet_address}"
                )

            for name, value in fields.items():
                if not hasattr(Account, name):
                    raise ValueError(f"Unknown account field: {name}")
                setattr(account, name, value)
            for record in records or []:
                session.add(TransactionRecord(account_id=account_id, **record))
            await session.flush()
            return account

    async def total_savings(self) -> Decimal:
        """Sum of all savings balances."""
        async with self._session() as session:
            result = await session.execute(select(Account.savings_balance))
            return sum((b for b in result.scalars() if b is not None), Decimal("0"))

    async def commit_movement(
        self,
        account_id: str,
        record: dict,
        savings_delta: Decimal = Decimal("0"),
        deposited_delta: Decimal = Decimal("0"),
        withdrawn_delta: Decimal = Decimal("0"),
        start_date: Optional[datetime] = None,
    ) -> tuple[Account, TransactionRecord]:
        """Apply a confirmed balance change and append its record in one unit of work.

        Deltas are applied to the row as currently stored. ``start_date`` is
        only written when the account has none yet.

        Raises:
            AccountNotFound: If the account does not exist
            ValueError: If the savings balance would go negative
        """
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")

            new_balance = (account.savings_balance or Decimal("0")) + savings_delta
            if new_balance < 0:
                raise ValueError(
                    f"Savings balance of account {account_id} would become {new_balance}"
                )

            account.savings_balance = new_balance
            account.total_deposited = (account.total_deposited or Decimal("0")) + deposited_delta
            account.total_withdrawn = (account.total_withdrawn or Decimal("0")) + withdrawn_delta
            if start_date is not None and account.savings_start_date is None:
                account.savings_start_date = start_date
            account.last_activity = record.get("timestamp") or utcnow()

            entry = TransactionRecord(account_id=account_id, **record)
            session.add(entry)
            await session.flush()
            return account, entry

    # Transaction operations
    async def append_transaction(self, **fields) -> TransactionRecord:
        """Append a transaction record. Records are never updated afterwards."""
        async with self._session() as session:
            record = TransactionRecord(**fields)
            session.add(record)
            await session.flush()
        logger.debug(f"Ledger {record.kind} record {record.id} for account {record.account_id}")
        return record

    async def query_transactions(
        self,
        account_id: str,
        kind: Optional[TransactionKind] = None,
        limit: Optional[int] = None,
    ) -> list[TransactionRecord]:
        """Transaction history for an account, newest first."""
        async with self._session() as session:
            stmt = select(TransactionRecord).where(TransactionRecord.account_id == account_id)
            if kind is not None:
                stmt = stmt.where(TransactionRecord.kind == TransactionKind(kind).value)
            stmt = stmt.order_by(TransactionRecord.timestamp.desc(), TransactionRecord.id.desc())
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())
