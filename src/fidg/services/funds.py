"""Fund-movement orchestrator: send, invest and withdraw.

All three operations follow one protocol:
1. Validate the amount (and destination where there is one)
2. Load the account and check it is provisioned
3. Build an ERC-20 transfer
4. Submit it through the user's Safe (send, invest) or from the
   operating signer (withdraw)
5. Wait for confirmation
6. Only then update balances and append exactly one history record

Same-account calls must be serialized by the caller (see fidg.utils.locks);
balance checks here are read-then-write.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from fidg.chain.abi import encode_transfer, is_address, to_checksum
from fidg.chain.base import ChainClient, TxReceipt
from fidg.config import Settings
from fidg.custody import KeyVault, address_of
from fidg.exceptions import (
    AccountNotFound,
    FidgError,
    LedgerWriteFailed,
    OnChainRevert,
    ReserveInsufficient,
    ValidationError,
    WalletNotProvisioned,
)
from fidg.ledger.models import (
    Account,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    utcnow,
)
from fidg.ledger.store import LedgerStore
from fidg.multisig.wallet import SafeWallet

logger = logging.getLogger(__name__)

SAVINGS_LABEL = "Fidg Savings"

# Errors recovered into an OperationResult instead of propagating
RECOVERABLE_ERRORS = (ValidationError, AccountNotFound, WalletNotProvisioned)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, passed explicitly into every operation."""
    account_id: str


@dataclass
class OperationResult:
    """Structured outcome of a fund movement.

    Attributes:
        status: HTTP-analogous status code
        balance: Savings balance after the operation (invest/withdraw) or
            the wallet token balance (balance queries)
        tx_hash: Confirmed transaction hash
        error: Stable error code when the operation was rejected
    """
    status: int
    message: str = ""
    balance: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    explorer_url: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status < 400

    @classmethod
    def from_error(cls, error: FidgError) -> "OperationResult":
        return cls(
            status=error.status_code,
            message=error.message,
            tx_hash=error.tx_hash,
            error=error.code,
        )


@dataclass
class ReserveStatus:
    """Operating reserve compared with the savings it backs."""
    operator_address: str
    reserve_balance: Decimal
    total_savings: Decimal

    @property
    def solvent(self) -> bool:
        return self.reserve_balance >= self.total_savings

    @property
    def shortfall(self) -> Decimal:
        return max(self.total_savings - self.reserve_balance, Decimal("0"))


def parse_amount(value) -> Decimal:
    """Parse a positive finite amount.

    Floats go through str() so 0.1 stays 0.1.

    Raises:
        ValidationError: For missing, non-numeric, non-finite or non-positive values
    """
    if value is None or isinstance(value, bool):
        raise ValidationError("A valid amount is required.")

    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("A valid amount is required.")

    if not amount.is_finite() or amount <= 0:
        raise ValidationError("A valid amount is required.")
    return amount


class FundMovementOrchestrator:
    """Moves the settlement token and keeps the ledger in step with the chain."""

    def __init__(
        self,
        store: LedgerStore,
        vault: KeyVault,
        chain: ChainClient,
        operator_key: str,
        settings: Settings,
    ):
        self.store = store
        self.vault = vault
        self.chain = chain
        self._operator_key = operator_key
        self.operator_address = address_of(operator_key)
        self.settings = settings
        self.currency = settings.currency
        self.savings_vehicle = to_checksum(settings.savings_vehicle_address)

    # ======================
    # Operations
    # ======================

    async def send(self, principal: Principal, recipient: str, amount) -> OperationResult:
        """Transfer tokens from the user's Safe to an external address."""
        try:
            amount = parse_amount(amount)
            if not is_address(recipient):
                raise ValidationError("A valid recipient address is required.")
            account = await self._load(principal, needs_custody=True)
            units = await self._units(amount)
        except RECOVERABLE_ERRORS as e:
            return OperationResult.from_error(e)

        recipient = to_checksum(recipient)
        logger.info(f"[Send] {amount} {self.currency} from {account.wallet_address} to {recipient}")

        receipt = await self._confirm(
            account,
            TransactionKind.SENT_FUNDS,
            amount,
            account.wallet_address,
            recipient,
            lambda: self._execute_from_safe(account, encode_transfer(recipient, units)),
        )

        await self._settle(
            account,
            receipt,
            TransactionKind.SENT_FUNDS,
            amount,
            account.wallet_address,
            recipient,
            description=f"Sent {amount} {self.currency} to {recipient[:6]}...",
        )
        return OperationResult(
            status=200,
            message="Transaction successful!",
            tx_hash=receipt.tx_hash,
            explorer_url=self.settings.explorer_link(receipt.tx_hash),
        )

    async def invest(self, principal: Principal, amount) -> OperationResult:
        """Move tokens from the user's Safe into the savings vehicle."""
        try:
            amount = parse_amount(amount)
            account = await self._load(principal, needs_custody=True)
            units = await self._units(amount)
        except RECOVERABLE_ERRORS as e:
            return OperationResult.from_error(e)

        logger.info(f"[Invest] {amount} {self.currency} from {account.wallet_address} to savings")

        receipt = await self._confirm(
            account,
            TransactionKind.INVESTED,
            amount,
            account.wallet_address,
            self.savings_vehicle,
            lambda: self._execute_from_safe(account, encode_transfer(self.savings_vehicle, units)),
        )

        updated = await self._settle(
            account,
            receipt,
            TransactionKind.INVESTED,
            amount,
            account.wallet_address,
            self.savings_vehicle,
            description=f"Deposited {amount} {self.currency} to {SAVINGS_LABEL}.",
            savings_delta=amount,
            deposited_delta=amount,
            first_deposit=True,
        )
        logger.info(f"[Invest] Account {account.id} savings balance now {updated.savings_balance}")
        return OperationResult(
            status=200,
            message="Investment successful!",
            balance=updated.savings_balance,
            tx_hash=receipt.tx_hash,
            explorer_url=self.settings.explorer_link(receipt.tx_hash),
        )

    async def withdraw(self, principal: Principal, amount) -> OperationResult:
        """Pay savings back to the user's Safe from the operating reserve.

        Raises:
            ReserveInsufficient: If the reserve cannot cover the amount
        """
        try:
            amount = parse_amount(amount)
            account = await self._load(principal, needs_custody=False)
            if amount > (account.savings_balance or Decimal("0")):
                raise ValidationError("Withdrawal amount exceeds savings balance.")
            units = await self._units(amount)
        except RECOVERABLE_ERRORS as e:
            return OperationResult.from_error(e)

        reserve = await self.chain.balance_of(self.operator_address)
        if reserve < amount:
            logger.error(
                f"[Withdraw] Reserve {self.operator_address} holds {reserve} {self.currency}, "
                f"cannot pay {amount} to account {account.id}"
            )
            raise ReserveInsufficient(
                f"Operating reserve cannot cover a withdrawal of {amount} {self.currency}"
            )

        logger.info(
            f"[Withdraw] System sending {amount} {self.currency} from {self.operator_address} "
            f"to {account.wallet_address}"
        )

        receipt = await self._confirm(
            account,
            TransactionKind.WITHDRAWN,
            amount,
            SAVINGS_LABEL,
            account.wallet_address,
            lambda: self.chain.submit(
                self._operator_key,
                self.chain.token_address,
                value=0,
                data=encode_transfer(account.wallet_address, units),
            ),
        )

        updated = await self._settle(
            account,
            receipt,
            TransactionKind.WITHDRAWN,
            amount,
            SAVINGS_LABEL,
            account.wallet_address,
            description=f"Withdrew {amount} {self.currency} from {SAVINGS_LABEL}.",
            savings_delta=-amount,
            withdrawn_delta=amount,
        )
        logger.info(f"[Withdraw] Account {account.id} savings balance now {updated.savings_balance}")
        return OperationResult(
            status=200,
            message="Withdrawal successful!",
            balance=updated.savings_balance,
            tx_hash=receipt.tx_hash,
            explorer_url=self.settings.explorer_link(receipt.tx_hash),
        )

    # ======================
    # Queries
    # ======================

    async def balance(self, principal: Principal) -> OperationResult:
        """Token balance of the caller's Safe."""
        try:
            account = await self._load(principal, needs_custody=False)
        except RECOVERABLE_ERRORS as e:
            return OperationResult.from_error(e)
        return await self.token_balance(account.wallet_address)

    async def token_balance(self, address: str) -> OperationResult:
        """Token balance of any address."""
        if not is_address(address):
            return OperationResult.from_error(ValidationError("Valid address is required."))
        balance = await self.chain.balance_of(address)
        return OperationResult(status=200, balance=balance)

    async def history(
        self,
        principal: Principal,
        kind: Optional[TransactionKind] = None,
        limit: Optional[int] = None,
    ) -> list[TransactionRecord]:
        """Transaction records for the caller, newest first."""
        if await self.store.get(principal.account_id) is None:
            raise AccountNotFound(f"Account {principal.account_id} not found")
        return await self.store.query_transactions(principal.account_id, kind=kind, limit=limit)

    async def reserve_status(self) -> ReserveStatus:
        """Compare the operating reserve with the sum of savings balances."""
        status = ReserveStatus(
            operator_address=self.operator_address,
            reserve_balance=await self.chain.balance_of(self.operator_address),
            total_savings=await self.store.total_savings(),
        )
        if not status.solvent:
            logger.critical(
                f"!!! Reserve shortfall: {status.reserve_balance} held against "
                f"{status.total_savings} {self.currency} of savings"
            )
        return status

    # ======================
    # Steps
    # ======================

    async def _load(self, principal: Principal, needs_custody: bool) -> Account:
        account = await self.store.get(principal.account_id)
        if account is None:
            raise AccountNotFound("User not found.")
        if not account.wallet_address or (needs_custody and not account.custody):
            raise WalletNotProvisioned("User wallet information not found.")
        return account

    async def _units(self, amount: Decimal) -> int:
        units = await self.chain.to_token_units(amount)
        if units <= 0:
            raise ValidationError(f"Amount {amount} is below the token's smallest unit.")
        if await self.chain.from_token_units(units) != amount:
            raise ValidationError(
                f"Amount {amount} has more decimal places than {self.currency} supports."
            )
        return units

    async def _execute_from_safe(self, account: Account, data: bytes) -> TxReceipt:
        """Reveal the owner key and run one token call through the Safe."""
        owner_key = self.vault.reveal(account.custody)
        try:
            wallet = SafeWallet(self.chain, account.wallet_address)
            return await wallet.execute(owner_key, self.chain.token_address, value=0, data=data)
        finally:
            del owner_key

    async def _confirm(
        self,
        account: Account,
        kind: TransactionKind,
        amount: Decimal,
        from_address: str,
        to_address: str,
        submit: Callable[[], Awaitable[TxReceipt]],
    ) -> TxReceipt:
        """Run the on-chain step. A mined revert leaves a failed record behind."""
        try:
            return await submit()
        except OnChainRevert as e:
            logger.error(f"[{kind.value}] Account {account.id}: {e.message}")
            if e.tx_hash:
                await self._record_failure(account, kind, amount, from_address, to_address, e.tx_hash)
            raise

    async def _record_failure(
        self,
        account: Account,
        kind: TransactionKind,
        amount: Decimal,
        from_address: str,
        to_address: str,
        tx_hash: str,
    ) -> None:
        try:
            await self.store.append_transaction(
                account_id=account.id,
                kind=kind.value,
                amount=amount,
                currency=self.currency,
                from_address=from_address,
                to_address=to_address,
                status=TransactionStatus.FAILED.value,
                tx_hash=tx_hash,
                timestamp=utcnow(),
                description=f"Failed: {kind.value} of {amount} {self.currency}.",
                explorer_url=self.settings.explorer_link(tx_hash),
            )
        except SQLAlchemyError as e:
            logger.critical(
                f"!!! Could not record reverted tx {tx_hash} for account {account.id} "
                f"({amount} {self.currency}): {e}"
            )

    async def _settle(
        self,
        account: Account,
        receipt: TxReceipt,
        kind: TransactionKind,
        amount: Decimal,
        from_address: str,
        to_address: str,
        description: str,
        savings_delta: Decimal = Decimal("0"),
        deposited_delta: Decimal = Decimal("0"),
        withdrawn_delta: Decimal = Decimal("0"),
        first_deposit: bool = False,
    ) -> Account:
        """Write balances and the success record for a confirmed transaction.

        Raises:
            LedgerWriteFailed: The chain is now ahead of the ledger
        """
        now = utcnow()
        record = {
            "kind": kind.value,
            "amount": amount,
            "currency": self.currency,
            "from_address": from_address,
            "to_address": to_address,
            "status": TransactionStatus.SUCCESS.value,
            "tx_hash": receipt.tx_hash,
            "timestamp": now,
            "description": description,
            "explorer_url": self.settings.explorer_link(receipt.tx_hash),
        }
        try:
            updated, _ = await self.store.commit_movement(
                account.id,
                record,
                savings_delta=savings_delta,
                deposited_delta=deposited_delta,
                withdrawn_delta=withdrawn_delta,
                start_date=now if first_deposit else None,
            )
        except (SQLAlchemyError, ValueError, AccountNotFound) as e:
            logger.critical(
                f"!!! LEDGER OUT OF SYNC: {kind.value} tx {receipt.tx_hash} confirmed for account "
                f"{account.id}, amount {amount} {self.currency}, but ledger write failed: {e}"
            )
            raise LedgerWriteFailed(
                f"Transaction {receipt.tx_hash} confirmed but could not be recorded",
                tx_hash=receipt.tx_hash,
                account_id=account.id,
                amount=amount,
            )
        return updated
