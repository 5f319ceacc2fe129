"""Main entry point - runs the API server."""

import logging

import uvicorn

from fidg.api.app import create_app
from fidg.config import get_settings

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    settings = get_settings()

    # Configure logging
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting Fidg...")
    logger.info(f"Environment: {settings.environment}")
    if not settings.has_operator:
        logger.warning("OPERATOR_PRIVATE_KEY not set - provisioning and withdrawals disabled")

    app = create_app()
    logger.info(f"Starting API server on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
