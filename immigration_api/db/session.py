"""
Database Session Management
===========================

One engine per process, built on first use from DATABASE_URL:
- sqlite:///./immigration.db (default) for development and tests
- postgresql://... in production (pooled, pre-ping)

Tests point DATABASE_URL at a temporary file and call reset_engine();
the next session picks up the new URL.
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .models import Base

DEFAULT_DATABASE_URL = "sqlite:///./immigration.db"

_engine = None
_engine_url = None

# Bound in get_engine(); unbound until the first session is requested.
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def _echo_sql() -> bool:
    return os.environ.get("SQL_ECHO", "false").lower() in ("true", "1", "yes")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE rules unless enabled per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=_echo_sql(),
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=int(os.environ.get("DB_POOL_SIZE", "5")),
        max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
        pool_pre_ping=True,
        connect_args={"connect_timeout": int(os.environ.get("DB_CONNECT_TIMEOUT", "5"))},
        echo=_echo_sql(),
    )


def get_engine():
    """Engine for the current DATABASE_URL (rebuilt if the URL changed)"""
    global _engine, _engine_url
    database_url = _database_url()
    if _engine is None or _engine_url != database_url:
        _engine = _build_engine(database_url)
        _engine_url = database_url
        SessionLocal.configure(bind=_engine)
    return _engine


def reset_engine():
    """Dispose the engine so the next call rebuilds it (tests)."""
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db():
    """Create any missing tables"""
    Base.metadata.create_all(bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency: one session per request, closed afterwards.

    Services commit explicitly; anything left uncommitted is discarded.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Session scope outside a request (health checks, scripts, tests).

    Commits on normal exit, rolls back and re-raises on error.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
