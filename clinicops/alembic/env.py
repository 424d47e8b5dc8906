"""Alembic environment for the clinic notification engine.

The target database is the ``sqlalchemy.url`` set on the config by
:func:`clinicops.migrations.alembic_config`, falling back to the engine's
environment-derived database settings.
"""

from __future__ import annotations

from alembic import context
import sqlalchemy as sa
from sqlalchemy import pool

from clinicops.db.config import DatabaseSettings, get_database_settings
from clinicops.db.models import Base

config = context.config
target_metadata = Base.metadata


def _database() -> DatabaseSettings:
    explicit = config.get_main_option("sqlalchemy.url")
    if explicit:
        return DatabaseSettings(url=explicit)
    return get_database_settings()


def _configure(database: DatabaseSettings, **kwargs) -> None:
    # SQLite cannot ALTER most constraints in place; batch mode copies the table.
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=database.is_sqlite,
        **kwargs,
    )


def run_migrations_offline(database: DatabaseSettings) -> None:
    _configure(database, url=database.url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(database: DatabaseSettings) -> None:
    engine = sa.create_engine(database.url, poolclass=pool.NullPool, **database.engine_options())
    try:
        with engine.begin() as connection:
            _configure(database, connection=connection, transaction_per_migration=True)
            context.run_migrations()
    finally:
        engine.dispose()


database = _database()
if context.is_offline_mode():
    run_migrations_offline(database)
else:
    run_migrations_online(database)
