"""Programmatic Alembic access for the render-batch SQLite database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path | None = None) -> Config:
    alembic_ini = _PROJECT_ROOT / "alembic.ini"
    if not alembic_ini.is_file():
        raise RuntimeError(f"Alembic configuration not found: {alembic_ini}")
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    return ScriptDirectory.from_config(_alembic_config()).get_current_head()


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, ``None`` for a fresh file."""

    if not db_path.exists():
        return None
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> bool:
    """Migrate ``db_path`` to head; ``False`` when it was already there."""

    if current_revision(db_path) == head_revision():
        return False
    command.upgrade(_alembic_config(db_path), "head")
    return True
