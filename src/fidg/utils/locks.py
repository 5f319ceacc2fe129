"""Per-account mutual exclusion for balance-changing operations.

The fund-movement orchestrator checks a balance and later writes it back,
with an on-chain confirmation in between. Callers serialize same-account
operations with these locks; different accounts never contend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: account_id -> asyncio.Lock
_account_locks: dict[str, asyncio.Lock] = {}


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


def get_account_lock(account_id: str) -> asyncio.Lock:
    """Get or create the lock for an account."""
    lock = _account_locks.get(account_id)
    if lock is None:
        lock = _account_locks.setdefault(account_id, asyncio.Lock())
    return lock


class AccountLock:
    """Context manager for exclusive access to one account's balances.

    Example:
        async with AccountLock(account_id, operation="withdraw"):
            result = await orchestrator.withdraw(principal, amount)
    """

    def __init__(
        self,
        account_id: str,
        timeout: Optional[float] = 30.0,
        operation: str = "balance_operation",
    ):
        self.account_id = account_id
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "AccountLock":
        self._lock = get_account_lock(self.account_id)

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for account {self.account_id} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for account {self.account_id} within {self.timeout}s"
            )

        logger.debug(f"Lock acquired for account {self.account_id}: {self.operation}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for account {self.account_id}: {self.operation}")
        return False


@asynccontextmanager
async def account_lock(
    account_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
):
    """Functional form of AccountLock.

    Example:
        async with account_lock(account_id, operation="invest"):
            ...
    """
    async with AccountLock(account_id, timeout=timeout, operation=operation):
        yield


def clear_account_locks() -> None:
    """Clear all account locks (useful for testing)."""
    _account_locks.clear()
