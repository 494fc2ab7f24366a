"""Programmatic Alembic entry points for the settlement database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Migrate the SQLite database at `db_path` to `revision`."""

    logger.debug("Upgrading %s to %s", db_path, revision)
    command.upgrade(alembic_config(db_path), revision)


def current_revision(db_path: Path) -> str | None:
    """Return the applied revision, or None for an unmigrated database."""

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
