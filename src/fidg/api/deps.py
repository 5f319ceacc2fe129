"""Request dependencies: the authenticated principal and service wiring."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException

from fidg.chain.base import ChainClient
from fidg.chain.web3_client import get_chain_client
from fidg.config import get_settings
from fidg.custody import KeyVault, get_vault
from fidg.exceptions import ConfigurationError
from fidg.ledger.database import get_session_factory
from fidg.ledger.store import LedgerStore
from fidg.monerium import MoneriumClient, get_monerium_client
from fidg.multisig.factory import SafeWalletFactory
from fidg.services.accounts import AccountService
from fidg.services.funds import FundMovementOrchestrator, Principal
from fidg.services.provisioning import ProvisioningSaga

_chain: Optional[ChainClient] = None


async def get_principal(x_account_id: str = Header(None)) -> Principal:
    """Principal set by the authenticating gateway in front of this service."""
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized. User not found in token.")
    return Principal(account_id=x_account_id.strip())


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Operator endpoints need the configured admin token. Without one they are closed."""
    settings = get_settings()
    if not settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access is not configured")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return True


def get_store() -> LedgerStore:
    return LedgerStore(get_session_factory())


def get_chain() -> ChainClient:
    """Shared chain client (keeps token decimals and per-sender locks)."""
    global _chain
    if _chain is None:
        _chain = get_chain_client()
    return _chain


def get_key_vault() -> KeyVault:
    return get_vault()


def get_operator_key() -> str:
    settings = get_settings()
    if not settings.operator_private_key:
        raise ConfigurationError("OPERATOR_PRIVATE_KEY is not configured")
    return settings.operator_private_key


def get_provisioning_saga() -> ProvisioningSaga:
    settings = get_settings()
    chain = get_chain()
    operator_key = get_operator_key()
    factory = SafeWalletFactory(
        chain,
        operator_key,
        proxy_factory=settings.safe_proxy_factory_address,
        singleton=settings.safe_singleton_address,
        fallback_handler=settings.safe_fallback_handler_address,
        gas_limit=settings.deployment_gas_limit,
    )
    return ProvisioningSaga(get_store(), get_key_vault(), chain, factory, operator_key, settings)


def get_orchestrator() -> FundMovementOrchestrator:
    return FundMovementOrchestrator(
        get_store(), get_key_vault(), get_chain(), get_operator_key(), get_settings()
    )


def get_account_service() -> AccountService:
    return AccountService(get_store())


def get_monerium() -> MoneriumClient:
    return get_monerium_client()
