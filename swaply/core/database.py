"""
Database utilities and connection management.

WHAT: SQLAlchemy engine, session factory and transaction helpers
WHY: Every store operation is one all-or-nothing unit of work
HOW: Sync engine v2; SQLite runs in WAL mode with BEGIN IMMEDIATE so writers serialize
"""

import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path

from sqlalchemy import create_engine, text, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Ensure data directory exists for file-backed SQLite
if _is_sqlite and ":memory:" not in settings.DATABASE_URL:
    data_dir = Path(settings.DATABASE_URL.replace("sqlite:///", "")).parent
    data_dir.mkdir(parents=True, exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": settings.DB_BUSY_TIMEOUT} if _is_sqlite else {},
    echo=settings.DEBUG,
    future=True
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable WAL + FK constraints and hand transaction control to SQLAlchemy."""
        # pysqlite's implicit BEGIN would defeat the IMMEDIATE begin below
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        """Take the write lock up front so check-then-write sequences cannot interleave."""
        conn.exec_driver_sql("BEGIN IMMEDIATE")

SessionLocal = sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False
)

Base = declarative_base()


@contextmanager
def get_db():
    """
    Context manager for database session.

    Usage:
        with get_db() as db:
            # use db session
            pass

    Yields:
        Session: SQLAlchemy session, committed on success, rolled back on error
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def retry_read(func):
    """
    Retry an idempotent read on transient storage errors.

    WHAT: Bounded retry for lock/timeout OperationalErrors
    WHY: A busy SQLite file or a dropped connection should not fail a read
    HOW: STORAGE_READ_RETRIES attempts with exponential backoff; writes must not use this
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        attempts = max(1, settings.STORAGE_READ_RETRIES)
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except OperationalError as e:
                if attempt == attempts - 1:
                    raise
                delay = settings.STORAGE_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"Transient storage error in {func.__name__} "
                    f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.2f}s: {e}"
                )
                time.sleep(delay)
    return wrapper


def ping_database() -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"available": True, "error": None}
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {"available": False, "error": str(e)}


def init_db():
    """Create all tables."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
