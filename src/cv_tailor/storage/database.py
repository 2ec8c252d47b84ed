"""Shared SQLite engine handle for all repositories of one process."""

from __future__ import annotations

from pathlib import Path

from cv_tailor.storage.alembic_runner import upgrade_head
from cv_tailor.storage.common import DEFAULT_BUSY_TIMEOUT_MS, build_sqlite_engine


class Database:
    """Owns the SQLAlchemy engine and the schema migration entry point."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()
