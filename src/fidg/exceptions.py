"""Error taxonomy for provisioning and fund movement.

Every error carries an HTTP-analogous status code and a stable code string
so the API layer can map it without inspecting messages.
"""

from decimal import Decimal
from typing import Optional


class FidgError(Exception):
    """Base class for all service errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", tx_hash: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.tx_hash = tx_hash


class ValidationError(FidgError):
    """Bad input. Never retried."""

    status_code = 400
    code = "validation_error"


class AccountExists(ValidationError):
    """Sign-up with an email that is already registered."""

    status_code = 409
    code = "account_exists"


class AccountNotFound(FidgError):
    """No account with the given id or email."""

    status_code = 404
    code = "account_not_found"


class WalletNotProvisioned(FidgError):
    """Account has no custody record or no deployed wallet yet."""

    status_code = 409
    code = "wallet_not_provisioned"


class CustodyError(FidgError):
    """Stored key material is unreadable. Requires manual recovery."""

    status_code = 500
    code = "custody_error"


class ConfigurationError(FidgError):
    """A required setting is missing or malformed."""

    status_code = 500
    code = "configuration_error"


class RpcUnavailable(FidgError):
    """Node or transport failure. Safe to retry with backoff."""

    status_code = 503
    code = "rpc_unavailable"


class ConfirmationTimeout(FidgError):
    """Transaction was broadcast but no receipt arrived in time.

    The outcome is unknown: re-query the chain before retrying.
    """

    status_code = 504
    code = "confirmation_timeout"


class OnChainRevert(FidgError):
    """Transaction was mined with a failed status. Funds did not move."""

    status_code = 502
    code = "onchain_revert"


class DeploymentFailed(FidgError):
    """Multisig wallet deployment failed. Fatal for provisioning."""

    status_code = 502
    code = "deployment_failed"


class ReserveInsufficient(FidgError):
    """Operating reserve cannot cover a withdrawal."""

    status_code = 503
    code = "reserve_insufficient"


class UpstreamUnavailable(FidgError):
    """A third-party API (Monerium) failed or refused the request."""

    status_code = 502
    code = "upstream_unavailable"


class LedgerWriteFailed(FidgError):
    """On-chain action succeeded but the ledger write did not.

    The chain is ahead of the ledger; the record needs reconciliation.
    """

    status_code = 500
    code = "ledger_write_failed"

    def __init__(
        self,
        message: str = "",
        tx_hash: Optional[str] = None,
        account_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ):
        super().__init__(message, tx_hash=tx_hash)
        self.account_id = account_id
        self.amount = amount
