"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tests.fakes import (
    ENCRYPTION_KEY,
    FALLBACK_HANDLER,
    OPERATOR_KEY,
    PROXY_FACTORY,
    SINGLETON,
    TOKEN_ADDRESS,
    FakeChain,
)

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["ENCRYPTION_KEY"] = ENCRYPTION_KEY
os.environ["OPERATOR_PRIVATE_KEY"] = OPERATOR_KEY
os.environ["TOKEN_ADDRESS"] = TOKEN_ADDRESS

from fidg.config import Settings
from fidg.custody import KeyVault
from fidg.ledger.models import Base
from fidg.ledger.store import LedgerStore
from fidg.multisig.factory import SafeWalletFactory
from fidg.services.funds import FundMovementOrchestrator
from fidg.services.provisioning import ProvisioningSaga
from fidg.utils.locks import clear_account_locks


@pytest.fixture(autouse=True)
def reset_locks():
    """Clear account locks between tests."""
    clear_account_locks()
    yield
    clear_account_locks()


@pytest.fixture
def settings() -> Settings:
    """Settings for tests, independent of the process environment."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        environment="test",
        operator_private_key=OPERATOR_KEY,
        encryption_key=ENCRYPTION_KEY,
        token_address=TOKEN_ADDRESS,
        safe_proxy_factory_address=PROXY_FACTORY,
        safe_singleton_address=SINGLETON,
        safe_fallback_handler_address=FALLBACK_HANDLER,
    )


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def store(db_engine) -> LedgerStore:
    """Ledger store on the in-memory database."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return LedgerStore(session_factory)


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault(ENCRYPTION_KEY)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def factory(chain) -> SafeWalletFactory:
    return SafeWalletFactory(
        chain,
        OPERATOR_KEY,
        proxy_factory=PROXY_FACTORY,
        singleton=SINGLETON,
        fallback_handler=FALLBACK_HANDLER,
    )


@pytest.fixture
def saga(store, vault, chain, factory, settings) -> ProvisioningSaga:
    return ProvisioningSaga(store, vault, chain, factory, OPERATOR_KEY, settings)


@pytest.fixture
def orchestrator(store, vault, chain, settings) -> FundMovementOrchestrator:
    return FundMovementOrchestrator(store, vault, chain, OPERATOR_KEY, settings)


@pytest_asyncio.fixture
async def account(saga, store):
    """A fully provisioned account."""
    result = await saga.sign_up("Alice", "alice@example.com", "secret1")
    return await store.get(result.account_id)
