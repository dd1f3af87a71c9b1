"""Run history database.

This module handles:
- Engine creation, with SQLite tuned for several concurrent ``build``
  processes appending to one history file
- The declarative base for ORM models
- Opening a ready-to-use session factory for the run history
"""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stagedbuild.config import get_settings

# Milliseconds a writer waits for another process holding the SQLite lock
SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create a SQLAlchemy engine for the run history.

    A file-backed SQLite database gets its parent directory created and is
    switched to WAL mode so readers never block a running build.

    Args:
        db_url: Database URL. Defaults to the configured ``db_url``.

    Returns:
        SQLAlchemy Engine.
    """
    url = make_url(db_url or get_settings().db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=False)

    engine = create_engine(
        url, connect_args={"check_same_thread": False}, echo=False
    )
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        event.listen(engine, "connect", _configure_sqlite)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine`` (or a configured one)."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the run history tables if they do not exist."""
    # Register models with the mapper before creating tables
    from stagedbuild.pipeline import models as pipeline_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def open_run_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Create the tables and return a session factory for them.

    Args:
        db_url: Database URL. Defaults to the configured ``db_url``.

    Returns:
        Session factory bound to a ready database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "SQLITE_BUSY_TIMEOUT_MS",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session_factory",
    "open_run_history",
]
