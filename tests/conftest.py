"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from cv_tailor.storage.database import Database

_ENV_PREFIXES = ("CV_TAILOR_", "OPENAI_")


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    """Migrated SQLite database in a temporary directory."""

    db = Database(tmp_path / "cv-tailor.db")
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer shell settings out of Settings.from_env()."""

    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
