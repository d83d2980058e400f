"""Database engine, session factory and FastAPI dependency.

WHAT:
    Builds the sync SQLAlchemy engine from DATABASE_URL and exposes
    `get_db()` for routers plus `get_sync_session()` for workers.

WHY:
    Webhook handlers, the dashboard and the arq worker all share one
    session factory so the ledger uniqueness constraint and DataPoint
    savepoints behave the same everywhere.

USAGE:
    from bizinsights.database import SessionLocal, get_db

    @router.get("/items")
    def list_items(db: Session = Depends(get_db)):
        ...

    with get_sync_session() as db:
        ...
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from bizinsights.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure .env is loaded or the env var is exported."
        )

    # Heroku-style URLs are not accepted by SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

def enable_sqlite_savepoints(sqlite_engine: Engine) -> None:
    """Take transaction control away from pysqlite so SAVEPOINT (begin_nested) works.

    https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#serializable-isolation-savepoints-transactional-ddl
    """

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


# SQLite engines (tests, local dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,        # webhook bursts from several providers at once
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in bizinsights.models to keep a single registry
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (arq jobs, scripts).

    Example:
        with get_sync_session() as db:
            integration = db.get(Integration, integration_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
