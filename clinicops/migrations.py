"""Schema helpers, Alembic entry points and the transactional session scope."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from clinicops.db.models import Base


ALEMBIC_INI = Path(__file__).resolve().parent / "alembic" / "alembic.ini"


def create_all_tables(engine: Engine) -> None:
    """Create all database tables defined by the declarative models."""

    Base.metadata.create_all(engine)


def drop_all_tables(engine: Engine) -> None:
    Base.metadata.drop_all(engine)


def alembic_config(url: Optional[str] = None) -> Config:
    """Return an Alembic config pointing at the bundled revisions."""

    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(ALEMBIC_INI.parent))
    if url:
        cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def upgrade_to_head(url: Optional[str] = None) -> None:
    command.upgrade(alembic_config(url), "head")


def pending_revisions(engine: Engine) -> list[str]:
    """Return revision ids not yet applied to *engine*, oldest first."""

    script = ScriptDirectory.from_config(alembic_config())
    head = script.get_current_head()
    if head is None:
        return []
    with engine.connect() as connection:
        current = MigrationContext.configure(connection).get_current_revision()
    if current == head:
        return []
    pending = script.iterate_revisions(head, current or "base")
    return [rev.revision for rev in reversed(list(pending))]


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "create_all_tables",
    "drop_all_tables",
    "alembic_config",
    "upgrade_to_head",
    "pending_revisions",
    "session_scope",
]
