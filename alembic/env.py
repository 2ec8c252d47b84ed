"""Alembic environment for the cv-tailor SQLite database."""

from __future__ import annotations

import logging
from logging.config import fileConfig
from pathlib import Path
from time import perf_counter

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlmodel import SQLModel, create_engine

from alembic import context
from cv_tailor.config import Settings
from cv_tailor.storage import sqlmodel_models  # noqa: F401
from cv_tailor.storage.common import sqlite_url

config = context.config

# Standalone `alembic` runs configure logging from alembic.ini.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

_migration_logger = logging.getLogger("alembic.runtime.migration")
_timer: dict[str, float | None] = {"current_start": None}


def _database_url() -> str:
    db_path = config.attributes.get("db_path")
    if db_path is None:
        db_path = Settings.from_env().db_path
    return sqlite_url(Path(db_path))


def _on_version_apply(*, ctx: object, step: object, heads: set[str], run_args: dict) -> None:
    revision = getattr(step, "up_revision_id", None) or "unknown"
    started = _timer["current_start"]
    if started is None:
        _migration_logger.info("Applied migration %s", revision)
    else:
        _migration_logger.info("Applied migration %s in %.3fs", revision, perf_counter() - started)
    _timer["current_start"] = perf_counter()


def run_migrations_offline() -> None:
    """Emit SQL for the configured database without connecting."""

    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=True,
        on_version_apply=_on_version_apply,
    )
    migration_context = context.get_context()
    current = migration_context.get_current_revision() or "base"
    heads = migration_context.script.get_heads() if migration_context.script else []
    target = ", ".join(heads) or "none"
    _migration_logger.info("Starting migration run from %s to %s", current, target)
    _timer["current_start"] = perf_counter()

    with context.begin_transaction():
        context.run_migrations()

    final_heads = ", ".join(migration_context.get_current_heads()) or "none"
    _migration_logger.info("Completed migration run at %s", final_heads)


def run_migrations_online() -> None:
    """Run migrations against a live SQLite connection."""

    connectable = create_engine(_database_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        do_run_migrations(connection)
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
