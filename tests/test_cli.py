from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from cv_tailor import __version__
from cv_tailor.main import cv_tailor

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI Ops"),
]


def _enqueue(runner: CliRunner, tmp_path: Path, db_path: Path) -> int:
    source = tmp_path / "job.txt"
    target = tmp_path / "cv.md"
    source.write_text("Senior Python engineer, SQL, queues.", "utf-8")
    target.write_text("# Jane Doe\n\nBackend engineer.", "utf-8")

    result = runner.invoke(
        cv_tailor,
        [
            "enqueue",
            "--db-path",
            str(db_path),
            "--owner-id",
            "7",
            "--source-file",
            str(source),
            "--target-file",
            str(target),
            "--title",
            "Senior Engineer",
            "--competency",
            "Python",
            "--competency",
            "SQL",
            "--model",
            "gpt-4o",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "status=queued model=gpt-4o" in result.output
    match = re.search(r"generation_id=(\d+)", result.output)
    assert match is not None
    return int(match.group(1))


def test_cli_enqueue_status_jobs_and_cancel(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    generation_id = _enqueue(runner, tmp_path, db_path)

    status = runner.invoke(
        cv_tailor,
        ["status", "--db-path", str(db_path), "--generation-id", str(generation_id)],
    )
    assert status.exit_code == 0, status.output
    assert f"Generation: {generation_id}" in status.output
    assert "owner_id=7 model=gpt-4o thinking_time=30" in status.output
    assert "status=queued progress=0% cost=0" in status.output
    assert "Outputs: 0" in status.output

    jobs = runner.invoke(cv_tailor, ["jobs", "--db-path", str(db_path), "--status", "pending"])
    assert jobs.exit_code == 0, jobs.output
    assert "Jobs: 1" in jobs.output
    assert f"type=tailor_cv status=pending attempts=0/5 generation_id={generation_id}" in (
        jobs.output
    )

    cancel = runner.invoke(
        cv_tailor,
        ["cancel", "--db-path", str(db_path), "--generation-id", str(generation_id)],
    )
    assert cancel.exit_code == 0, cancel.output
    assert f"Generation cancelled: {generation_id} (pending jobs removed=1)" in cancel.output

    again = runner.invoke(
        cv_tailor,
        ["cancel", "--db-path", str(db_path), "--generation-id", str(generation_id)],
    )
    assert again.exit_code != 0
    assert "status=cancelled" in again.output

    empty = runner.invoke(cv_tailor, ["jobs", "--db-path", str(db_path)])
    assert "Jobs: 0" in empty.output


def test_cli_watch_ends_on_terminal_status(tmp_path: Path) -> None:
    db_path = tmp_path / "watch.db"
    runner = CliRunner()
    generation_id = _enqueue(runner, tmp_path, db_path)
    runner.invoke(
        cv_tailor,
        ["cancel", "--db-path", str(db_path), "--generation-id", str(generation_id)],
    )

    result = runner.invoke(
        cv_tailor,
        ["watch", "--db-path", str(db_path), "--generation-id", str(generation_id)],
    )

    assert result.exit_code == 0, result.output
    assert 'event: status\ndata: {"value":"cancelled"' in result.output
    assert 'event: progress\ndata: {"percent":0}' in result.output
    assert "event: tokens" in result.output
    assert "event: cost" in result.output


def test_cli_watch_reports_missing_generation(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cv_tailor,
        ["watch", "--db-path", str(tmp_path / "empty.db"), "--generation-id", "99"],
    )

    assert result.exit_code == 0, result.output
    assert 'event: error\ndata: {"message":"Generation not found."}' in result.output


def test_cli_status_missing_generation_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cv_tailor,
        ["status", "--db-path", str(tmp_path / "empty.db"), "--generation-id", "3"],
    )

    assert result.exit_code != 0
    assert "Generation not found: 3" in result.output


def test_cli_worker_requires_api_key(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cv_tailor,
        ["worker", "--db-path", str(tmp_path / "worker.db"), "--once"],
    )

    assert result.exit_code != 0
    assert "OPENAI_API_KEY is required" in result.output


def test_cli_worker_once_on_empty_queue(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    result = CliRunner().invoke(
        cv_tailor,
        ["worker", "--db-path", str(tmp_path / "worker.db"), "--once"],
    )

    assert result.exit_code == 0, result.output
    assert "Worker summary: processed=0 succeeded=0 failed=0 retried=0" in result.output


def test_cli_usage_on_empty_ledger(tmp_path: Path) -> None:
    result = CliRunner().invoke(cv_tailor, ["usage", "--db-path", str(tmp_path / "usage.db")])

    assert result.exit_code == 0, result.output
    assert "Lifetime: calls=0" in result.output
    assert "This month: calls=0" in result.output
    assert "Recent calls: 0" in result.output


def test_cli_version() -> None:
    result = CliRunner().invoke(cv_tailor, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
