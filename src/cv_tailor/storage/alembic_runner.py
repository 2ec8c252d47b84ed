"""Apply the bundled Alembic migrations to a cv-tailor SQLite file."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config bound to `db_path` regardless of the working directory."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    # ConfigParser interpolates "%" in option values.
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic").replace("%", "%%"))
    config.set_main_option("path_separator", "os")
    config.attributes["db_path"] = db_path
    # The host process owns logging setup; env.py must not reset it.
    config.attributes["configure_logger"] = False
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for the given SQLite database."""

    logger.debug("Upgrading schema of %s to head.", db_path)
    command.upgrade(build_alembic_config(db_path), "head")
