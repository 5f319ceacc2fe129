"""Utility modules for Fidg."""

from fidg.utils.locks import AccountLock, LockTimeoutError, account_lock

__all__ = ["AccountLock", "LockTimeoutError", "account_lock"]
