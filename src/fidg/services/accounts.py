"""Account profile reads and updates."""

import logging

from fidg.exceptions import AccountNotFound, ValidationError
from fidg.ledger.models import Account
from fidg.ledger.store import LedgerStore
from fidg.services.funds import Principal

logger = logging.getLogger(__name__)


class AccountService:
    """Profile operations for the authenticated caller."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def get_profile(self, principal: Principal) -> Account:
        account = await self.store.get(principal.account_id)
        if account is None:
            raise AccountNotFound(f"Account {principal.account_id} not found")
        return account

    async def update_name(self, principal: Principal, name) -> Account:
        """Set the display name (trimmed, non-empty)."""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("A valid name is required.")

        account = await self.store.patch(principal.account_id).set(name=name.strip()).commit()
        logger.info(f"[User] Updated name for account {account.id} to \"{account.name}\"")
        return account
