"""Apply the packaged session-store migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from fin_research.storage.common import sqlite_url

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the database at ``db_path`` to the newest schema revision."""

    command.upgrade(migration_config(db_path), "head")
