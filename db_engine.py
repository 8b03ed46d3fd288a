"""
Database engine and session management for FolioOracle.
Uses SQLModel with SQLite for persistent storage.
Features Write-Ahead Logging (WAL) mode for file databases.
"""

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.pool import StaticPool
from typing import Optional
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: Optional[object] = None


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.database_url
        if _is_memory_url(url):
            # One shared connection, otherwise every session sees an empty database
            _engine = create_engine(
                url,
                echo=settings.db_echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif url.startswith("sqlite"):
            _engine = create_engine(
                url,
                echo=settings.db_echo,
                connect_args={
                    "check_same_thread": False,  # Scheduler jobs run on another thread
                }
            )
            _enable_wal_mode()
        else:
            _engine = create_engine(url, echo=settings.db_echo)
    return _engine


def _enable_wal_mode():
    """Enable SQLite WAL mode so the price-sync job and the UI can write concurrently."""
    if _engine is None:
        return

    try:
        with _engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA busy_timeout=5000")
            logger.info("SQLite WAL mode enabled for concurrent access")
    except Exception as e:
        logger.warning(f"Could not enable WAL mode: {e}")


def reset_engine():
    """Dispose the current engine so the next call rebuilds it from settings."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def init_db():
    """Initialize the database and create all tables."""
    from models import Account, Holding, UserProfile  # noqa: F401

    engine = get_engine()
    SQLModel.metadata.create_all(engine)
    logger.info("Database initialized")


def get_session():
    """Get a new database session."""
    return Session(get_engine(), expire_on_commit=False)
