"""Database helpers for the clinic notification engine."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseSettings, get_database_settings
from .models import Base


def create_engine_from_settings(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Create the SQLAlchemy engine described by *settings*."""

    settings = settings or get_database_settings()
    options = settings.engine_options()
    if settings.url in ("sqlite://", "sqlite:///:memory:"):
        # A single shared connection keeps an in-memory database alive across sessions.
        options["poolclass"] = StaticPool
    engine = create_engine(settings.url, future=True, **options)

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return the session factory used by every engine component."""

    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "create_engine_from_settings",
    "make_session_factory",
]
