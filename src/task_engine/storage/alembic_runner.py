"""Programmatic Alembic entry points for the engine database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path`` and the repo's migration scripts."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    command.upgrade(migration_config(db_path), "head")
