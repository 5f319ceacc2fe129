"""Ledger engine and session factory, created lazily from settings."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fidg.config import Settings, get_settings
from fidg.ledger.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    """Ledger URL with an async driver (plain sqlite URLs get aiosqlite)."""
    if url.startswith("sqlite://") and not url.startswith("sqlite+"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


def build_engine(settings: Settings) -> AsyncEngine:
    url = async_database_url(settings.database_url)
    logger.info(f"Ledger database: {settings._redact_url(url)}")
    return create_async_engine(url, echo=settings.debug and not settings.is_production)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for LedgerStore. Sessions keep loaded rows usable after commit."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(), class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
    return _session_factory


async def init_db() -> None:
    """Create the accounts and transactions tables if they are missing."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine, _session_factory = None, None
