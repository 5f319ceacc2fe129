"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fidg import __version__
from fidg.config import get_settings
from fidg.exceptions import FidgError
from fidg.ledger.database import close_db, init_db
from fidg.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await close_db()


async def fidg_error_handler(request: Request, exc: FidgError) -> JSONResponse:
    """Map service errors to their status code and a stable body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": exc.status_code,
            "error": exc.code,
            "message": exc.message,
            "tx_hash": exc.tx_hash,
        },
    )


async def lock_timeout_handler(request: Request, exc: LockTimeoutError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "status": 409,
            "error": "operation_in_progress",
            "message": "Another operation for this account is still running.",
            "tx_hash": None,
        },
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Fidg API",
        description="Custodial Safe wallets with a savings ledger",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FidgError, fidg_error_handler)
    app.add_exception_handler(LockTimeoutError, lock_timeout_handler)

    # Register routes
    from fidg.api.routes import auth, health, monerium, wallet

    app.include_router(health.router, tags=["Health"])
    app.include_router(auth.router, tags=["Accounts"])
    app.include_router(wallet.router)
    app.include_router(monerium.router)

    return app
