"""
FastAPI application entry point for the entitlement engine.

Run as: uvicorn harbor_entitlements.main:app

Configuration:
- DATABASE_URL: Database for accounts and sub-accounts
- ENTITLEMENT_AUTO_CREATE_SCHEMA: "true" creates missing tables at startup
  (local development only; deployed databases are migrated separately)
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from harbor_entitlements import __version__
from harbor_entitlements.api.dependencies import get_tier_catalog
from harbor_entitlements.api.routes import accounts, authorization, health, tiers
from harbor_entitlements.database.session import create_schema

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting entitlement engine API", extra={"version": __version__})

    # Fail fast on a broken tier catalog
    catalog = get_tier_catalog()
    logger.info(
        "Tier catalog loaded",
        extra={"version": catalog.loader.version, "tiers": len(catalog.loader.tiers)},
    )

    database_url = os.getenv("DATABASE_URL")
    app.state.database_configured = bool(database_url)
    if not database_url:
        logger.error("DATABASE_URL is not set. Account endpoints will return 503.")
    elif os.getenv("ENTITLEMENT_AUTO_CREATE_SCHEMA", "false").lower() == "true":
        create_schema()

    yield

    logger.info("Shutting down entitlement engine API")


app = FastAPI(
    title="Harbor Entitlements API",
    description="Tier entitlements, premium membership and delegated authorization",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(authorization.router)
app.include_router(tiers.router)
app.include_router(accounts.router)
