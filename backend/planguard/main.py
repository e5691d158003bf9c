"""
FastAPI application entry point for planguard.

Serves the entitlement routes. The organization id is expected on
request.state.organization_id, set by the deployment's authentication
middleware.

Usage:
    uvicorn planguard.main:app
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from planguard.api.routes import entitlements

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting planguard API")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Entitlement endpoints will return 503."
        )
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    yield

    logger.info("Shutting down planguard API")


def create_app() -> FastAPI:
    """Build the application with every planguard router mounted."""
    app = FastAPI(
        title="planguard API",
        description="Plan-based feature entitlements",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(entitlements.router)

    return app


app = create_app()
