"""
Database session management with connection pooling.

Provides a FastAPI dependency for request-scoped sessions and a
generator for scheduled jobs.

Usage:
    from planguard.database.session import get_db_session

    @router.get("/api/entitlements")
    async def read_entitlements(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Converts postgres:// URLs to postgresql:// for SQLAlchemy.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """
    Get or create the database engine singleton.

    - pool_pre_ping: Verify connections before use
    - pool_recycle: Recycle connections after 30 minutes
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            _engine = create_engine(
                database_url,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
            logger.info("Database engine created")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine
        )
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Session generator for non-request contexts (cron jobs).

    Usage:
        for session in get_db_session_sync():
            # use session
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
