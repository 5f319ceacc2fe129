"""Account provisioning saga.

Sign-up flow:
1. Generate the owner key and persist the account with an empty wallet address
2. Predict the Safe address for owner + salt
3. Deploy the Safe from the operating signer
4. Link: write the wallet address and a wallet-created record
5. Fund the owner key with gas

There is no rollback: a deployed Safe cannot be undeployed. A deployment
failure ends in the degraded state (identity exists, no wallet, reported as
multi-status). A gas funding failure is only an alert: the account stays
usable and funding is retried out of band.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from eth_utils import to_wei
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fidg.chain.base import ChainClient
from fidg.config import Settings
from fidg.custody import KeyVault, generate_owner_key, hash_password
from fidg.exceptions import (
    AccountExists,
    AccountNotFound,
    ConfirmationTimeout,
    DeploymentFailed,
    FidgError,
    LedgerWriteFailed,
    ValidationError,
    WalletNotProvisioned,
)
from fidg.ledger.models import (
    Account,
    ProvisioningState,
    TransactionKind,
    TransactionStatus,
    utcnow,
)
from fidg.ledger.store import LedgerStore
from fidg.multisig.factory import SafeWalletFactory

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

SYSTEM_LABEL = "Fidg System"
NATIVE_TRANSFER_GAS = 21000


@dataclass
class ProvisioningResult:
    """Outcome of a provisioning run.

    Attributes:
        account_id: The account (always exists once sign-up got past validation)
        state: Terminal saga state reached
        status: 201 full success, 207 degraded, 200 nothing to do
        wallet_address: Safe address, empty when degraded
        tx_hash: Deployment transaction hash
        gas_funded: Whether the owner key received its gas top-up
    """
    account_id: str
    state: ProvisioningState
    status: int
    wallet_address: str = ""
    tx_hash: Optional[str] = None
    gas_funded: bool = False
    message: str = ""
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.state == ProvisioningState.DEGRADED


class ProvisioningSaga:
    """Creates custodial identities with a funded single-owner Safe."""

    def __init__(
        self,
        store: LedgerStore,
        vault: KeyVault,
        chain: ChainClient,
        factory: SafeWalletFactory,
        operator_key: str,
        settings: Settings,
    ):
        self.store = store
        self.vault = vault
        self.chain = chain
        self.factory = factory
        self._operator_key = operator_key
        self.settings = settings

    def _validate_sign_up(self, name, email, password) -> None:
        if not name or not email or not password:
            raise ValidationError("All fields are required: name, email, and password.")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("A valid name is required.")
        if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
            raise ValidationError("A valid email address is required.")
        if not isinstance(password, str) or len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.settings.min_password_length} characters long."
            )

    async def sign_up(self, name: str, email: str, password: str) -> ProvisioningResult:
        """Create an account and provision its wallet.

        Raises:
            ValidationError / AccountExists: Before anything is written
            LedgerWriteFailed: Safe deployed but the link could not be recorded
        """
        self._validate_sign_up(name, email, password)
        email = email.strip().lower()

        if await self.store.get_by_email(email) is not None:
            raise AccountExists("A user with this email already exists.")

        owner_address, raw_key = generate_owner_key()
        custody = self.vault.protect(raw_key)
        del raw_key

        salt = self.factory.new_salt()
        try:
            account = await self.store.create_account(
                name=name.strip(),
                email=email,
                password_hash=hash_password(password),
                owner_address=owner_address,
                custody=custody,
                wallet_address="",
                wallet_salt=str(salt),
                provisioning_state=ProvisioningState.KEY_GENERATED.value,
            )
        except IntegrityError:
            # Another sign-up for the same email committed first
            raise AccountExists("A user with this email already exists.")
        logger.info(f"Account {account.id} created with owner {owner_address}")

        return await self._provision_wallet(account, salt)

    async def _transition(self, account_id: str, state: ProvisioningState, **fields) -> Account:
        logger.debug(f"Account {account_id} -> {state.value}")
        return await self.store.patch(account_id).set(provisioning_state=state.value, **fields).commit()

    async def _provision_wallet(self, account: Account, salt: int) -> ProvisioningResult:
        try:
            predicted = await self.factory.predict_address(account.owner_address, salt)
            await self._transition(account.id, ProvisioningState.WALLET_PREDICTED)
            logger.info(f"Account {account.id}: predicted Safe {predicted}")

            deployment = await self.factory.deploy(account.owner_address, salt)
        except FidgError as e:
            # Prediction failures land here as well: no usable wallet either way
            failure = e if isinstance(e, DeploymentFailed) else DeploymentFailed(e.message)
            logger.critical(
                f"!!! Wallet setup failed for account {account.id} ({account.email}); "
                f"account left degraded: {failure.message}"
            )
            await self._transition(account.id, ProvisioningState.DEGRADED)
            return ProvisioningResult(
                account_id=account.id,
                state=ProvisioningState.DEGRADED,
                status=207,
                tx_hash=failure.tx_hash,
                message="User account created, but wallet setup failed. Please contact support.",
                error=failure.code,
            )

        logger.info(f"Account {account.id}: Safe {deployment.address} deployed")
        await self._link_wallet(account, deployment.address, deployment.tx_hash)

        funded = account.gas_funded or await self._fund_gas(account)
        state = ProvisioningState.GAS_FUNDED if funded else ProvisioningState.LEDGER_LINKED
        message = "User registered and wallet created successfully."
        if not funded:
            message += " Gas funding is pending."

        return ProvisioningResult(
            account_id=account.id,
            state=state,
            status=201,
            wallet_address=deployment.address,
            tx_hash=deployment.tx_hash,
            gas_funded=funded,
            message=message,
        )

    def _wallet_created_record(self, account: Account, address: str, tx_hash: Optional[str], now) -> dict:
        return {
            "kind": TransactionKind.WALLET_CREATED.value,
            "from_address": SYSTEM_LABEL,
            "to_address": address,
            "status": TransactionStatus.SUCCESS.value,
            "tx_hash": tx_hash,
            "timestamp": now,
            "description": f"Fidg account and personal vault created for {account.name}.",
            "explorer_url": self.settings.explorer_link(tx_hash),
        }

    async def _link_wallet(self, account: Account, address: str, tx_hash: Optional[str]) -> None:
        """Record the deployed wallet on the account and in the history, in one write."""
        now = utcnow()
        try:
            await (
                self.store.patch(account.id)
                .set(
                    provisioning_state=ProvisioningState.LEDGER_LINKED.value,
                    wallet_address=address,
                    last_activity=now,
                )
                .append(**self._wallet_created_record(account, address, tx_hash, now))
                .commit()
            )
        except (SQLAlchemyError, ValueError) as e:
            logger.critical(
                f"!!! LEDGER OUT OF SYNC: Safe {address} (tx {tx_hash}) deployed for account "
                f"{account.id} but not linked: {e}"
            )
            raise LedgerWriteFailed(
                "Wallet deployed but could not be recorded",
                tx_hash=tx_hash,
                account_id=account.id,
            )

    async def _backfill_wallet_record(self, account: Account) -> None:
        """Write the wallet-created record for a linked account that has none."""
        if await self.store.query_transactions(account.id, kind=TransactionKind.WALLET_CREATED, limit=1):
            return
        logger.warning(f"Account {account.id}: wallet {account.wallet_address} has no creation record, adding it")
        await self.store.append_transaction(
            account_id=account.id,
            **self._wallet_created_record(account, account.wallet_address, None, utcnow()),
        )

    async def _fund_gas(self, account: Account) -> bool:
        """Send the gas top-up to the owner key. Failure is an alert, not an error.

        A top-up that timed out is looked up by its hash first and only
        resent once the chain shows it reverted.
        """
        if account.gas_tx_hash:
            try:
                receipt = await self.chain.get_receipt(account.gas_tx_hash)
            except FidgError as e:
                logger.error(f"Cannot check gas funding {account.gas_tx_hash} for account {account.id}: {e.message}")
                return False
            if receipt is None:
                logger.warning(f"Gas funding {account.gas_tx_hash} for account {account.id} still pending")
                return False
            if receipt.succeeded:
                return await self._mark_gas_funded(account, receipt.tx_hash)
            logger.warning(f"Gas funding {account.gas_tx_hash} for account {account.id} reverted, resending")
            await self.store.patch(account.id).set(gas_tx_hash=None).commit()

        amount = self.settings.gas_funding_amount
        try:
            receipt = await self.chain.submit(
                self._operator_key,
                account.owner_address,
                value=to_wei(amount, "ether"),
                gas_limit=NATIVE_TRANSFER_GAS,
            )
        except ConfirmationTimeout as e:
            logger.warning(
                f"Gas funding for owner {account.owner_address} of account {account.id} "
                f"unconfirmed: {e.message}"
            )
            if e.tx_hash:
                try:
                    await self.store.patch(account.id).set(gas_tx_hash=e.tx_hash).commit()
                except SQLAlchemyError as db_error:
                    logger.critical(
                        f"!!! Gas funding {e.tx_hash} for account {account.id} broadcast but not "
                        f"recorded; check the chain before resending: {db_error}"
                    )
            return False
        except FidgError as e:
            logger.critical(
                f"!!! CRITICAL: Failed to send gas money to owner {account.owner_address} "
                f"of account {account.id}: {e.message}"
            )
            return False

        logger.info(f"Funded owner {account.owner_address} with {amount} native. Tx: {receipt.tx_hash}")
        return await self._mark_gas_funded(account, receipt.tx_hash)

    async def _mark_gas_funded(self, account: Account, tx_hash: str) -> bool:
        try:
            await self._transition(
                account.id, ProvisioningState.GAS_FUNDED, gas_funded=True, gas_tx_hash=tx_hash
            )
        except SQLAlchemyError as e:
            logger.critical(
                f"!!! Gas funding {tx_hash} for account {account.id} confirmed but not "
                f"recorded; do not resend: {e}"
            )
        return True

    async def retry_wallet_deployment(self, account_id: str) -> ProvisioningResult:
        """Re-run deployment for a degraded account with its persisted salt."""
        account = await self.store.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")

        if account.wallet_address:
            await self._backfill_wallet_record(account)
            return ProvisioningResult(
                account_id=account.id,
                state=ProvisioningState(account.provisioning_state),
                status=200,
                wallet_address=account.wallet_address,
                gas_funded=account.gas_funded,
                message="Wallet already provisioned.",
            )

        if account.wallet_salt is None:
            salt = self.factory.new_salt()
            account = await self.store.patch(account.id).set(wallet_salt=str(salt)).commit()
        else:
            salt = int(account.wallet_salt)

        logger.info(f"Retrying wallet deployment for account {account.id}")
        return await self._provision_wallet(account, salt)

    async def retry_gas_funding(self, account_id: str) -> ProvisioningResult:
        """Re-send the gas top-up if it never went through."""
        account = await self.store.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if not account.wallet_address:
            raise WalletNotProvisioned("Deploy the wallet before funding gas.")

        funded = account.gas_funded or await self._fund_gas(account)
        account = await self.store.get(account_id)
        if funded:
            message, error = "Gas funded.", None
        elif account.gas_tx_hash:
            message, error = "Gas funding is awaiting confirmation.", "gas_funding_pending"
        else:
            message, error = "Gas funding failed.", "gas_funding_failed"
        return ProvisioningResult(
            account_id=account.id,
            state=ProvisioningState(account.provisioning_state),
            status=200,
            wallet_address=account.wallet_address,
            gas_funded=funded,
            message=message,
            error=error,
        )
