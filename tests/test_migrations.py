import logging
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from cv_tailor.storage.alembic_runner import PROJECT_ROOT, build_alembic_config
from cv_tailor.storage.database import Database

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('jobs', 'generations', 'generation_outputs',
                               'api_usage', 'audit_logs')
                ORDER BY name
                """,
            ),
        ).scalars().all()
    database.close()

    assert version == "20261019_0001"
    assert tables == ["api_usage", "audit_logs", "generation_outputs", "generations", "jobs"]


def test_alembic_config_targets_given_database(tmp_path: Path) -> None:
    config = build_alembic_config(tmp_path / "cv.db")

    assert config.get_main_option("script_location") == str(PROJECT_ROOT / "alembic")
    assert config.get_main_option("path_separator") == "os"
    assert config.attributes["db_path"] == tmp_path / "cv.db"
    assert config.attributes["configure_logger"] is False


def test_migration_run_logs_revisions_and_keeps_app_loggers(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    app_logger = logging.getLogger("cv_tailor.jobs.worker")
    caplog.set_level(logging.INFO, logger="alembic.runtime.migration")
    database = Database(tmp_path / "logged.db")

    database.init_schema()
    database.close()

    messages = [record.getMessage() for record in caplog.records]
    assert "Starting migration run from base to 20261019_0001" in messages
    assert any(message.startswith("Applied migration 20261019_0001") for message in messages)
    assert "Completed migration run at 20261019_0001" in messages
    assert app_logger.disabled is False
