"""Programmatic Alembic upgrades for the job store schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from jobrpc.storage.common import sqlite_url

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[3] / "alembic"


def upgrade_head(db_path: Path, *, migrations_dir: Path = MIGRATIONS_DIR) -> None:
    """Bring ``db_path`` to the latest ``rpc_jobs`` schema. Safe to repeat."""

    if not (migrations_dir / "env.py").is_file():
        raise RuntimeError(
            f"Alembic migrations not found at {migrations_dir}; "
            "install jobrpc from a source checkout (pip install -e .).",
        )
    config = Config()
    config.set_main_option("script_location", str(migrations_dir))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    logger.debug("Upgrading job store schema at %s", db_path)
    command.upgrade(config, "head")
