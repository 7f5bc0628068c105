"""
Engine and session handling for the entitlement store.

Two consumers open sessions here:
- API routes, one session per request through get_db_session
- the expiration sweeper, one session per account from get_session_factory()

Configuration:
- DATABASE_URL: SQLAlchemy URL (postgres:// is normalised to postgresql://)
- ENTITLEMENT_DB_POOL_SIZE: Pooled connections per process (default: 5)
- ENTITLEMENT_DB_MAX_OVERFLOW: Extra connections under load (default: 10)
"""

import logging
import os
from typing import AsyncGenerator, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from harbor_entitlements.db_base import Base

logger = logging.getLogger(__name__)

POOL_SIZE = int(os.getenv("ENTITLEMENT_DB_POOL_SIZE", "5"))
MAX_OVERFLOW = int(os.getenv("ENTITLEMENT_DB_MAX_OVERFLOW", "10"))

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def database_url_from_env() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def build_engine(url: str) -> Engine:
    """
    Create an engine for the entitlement store.

    SQLite connections are shared across the sweeper's worker threads, so the
    same-thread check is off; server databases get a pre-pinged bounded pool.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            url = database_url_from_env()
        except ValueError as e:
            logger.error("Entitlement store not configured", extra={"error": str(e)})
            raise
        _engine = build_engine(url)
        logger.info("Entitlement store engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    """Session factory bound to the process engine. Objects survive commit."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _session_factory


def create_schema(engine: Optional[Engine] = None) -> None:
    """Create missing entitlement tables. Deployed databases are migrated instead."""
    import harbor_entitlements.models  # noqa: F401 - registers tables

    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Entitlement schema created", extra={"tables": sorted(Base.metadata.tables)})


async def get_db_session() -> AsyncGenerator[Session, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Raises HTTP 503 while DATABASE_URL is unset, so the health and tier
    routes keep working on a process without a database.
    """
    try:
        factory = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement store not configured",
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()
