"""
Database connection and session management.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from identity_quality.core.config import get_settings
from identity_quality.core.models import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton engine & session factory, created once
# ---------------------------------------------------------------------------
_engine = None
_SessionLocal = None


def get_engine():
    """
    Get the shared database engine (singleton).

    The engine is created once and reused for the lifetime of the process.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,  # Verify connections before using
            echo=False,
        )
    return _engine


def create_tables(engine=None):
    """
    Create all quality tables if they don't exist.

    Idempotent - safe to call multiple times.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Creating quality tables if they don't exist...")
    Base.metadata.create_all(bind=engine)
    logger.info("Quality tables ready")


def get_session_factory():
    """Get the shared session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine()
        )
    return _SessionLocal


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """
    Run a unit of work atomically.

    Commits when the block exits normally; rolls back and re-raises on any
    exception so the store is left in its prior state.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
