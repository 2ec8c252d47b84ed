"""CLI entrypoint for cv-tailor."""

import logging
import sys
from pathlib import Path

import rich_click as click

from cv_tailor import __version__
from cv_tailor.config import Settings
from cv_tailor.controllers import (
    TailorCliController,
    TailorEnqueueCommand,
    TailorGenerationCommand,
    TailorJobsCommand,
    TailorStatusCommand,
    TailorUsageCommand,
    TailorWorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TailorCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="cv-tailor")
def cv_tailor() -> None:
    """CV tailoring queue, worker and progress stream CLI."""

    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cv_tailor.command("enqueue")
@_DB_PATH_OPTION
@click.option("--owner-id", type=click.IntRange(min=1), required=True, help="Owning user id.")
@click.option(
    "--source-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Job description text file.",
)
@click.option(
    "--target-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Candidate CV markdown file.",
)
@click.option("--title", default="", help="Target job title.")
@click.option("--company", default="", help="Target company name.")
@click.option(
    "--competency",
    "competencies",
    multiple=True,
    help="Competency to emphasise. Can be repeated.",
)
@click.option("--cv-sections", default="", help="CV sections to focus on.")
@click.option(
    "--prompt-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Optional constraints template overriding the default prompt.",
)
@click.option("--model", default=None, help="Optional model override for this generation.")
@click.option(
    "--thinking-time",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="Thinking time recorded with the generation.",
)
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: int,
    source_file: Path,
    target_file: Path,
    title: str,
    company: str,
    competencies: tuple[str, ...],
    cv_sections: str,
    prompt_file: Path | None,
    model: str | None,
    thinking_time: int,
) -> None:
    """Queue a tailoring request for the worker."""

    _emit_lines(
        CONTROLLER.enqueue(
            TailorEnqueueCommand(
                db_path=db_path,
                owner_id=owner_id,
                source_path=source_file,
                target_path=target_file,
                title=title,
                company=company,
                competencies=competencies,
                cv_sections=cv_sections,
                prompt_path=prompt_file,
                model=model,
                thinking_time=thinking_time,
            ),
        ),
    )


@cv_tailor.command("worker")
@_DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one reserve-execute cycle or loop.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit loop after this many consecutive empty polls (default: poll forever).",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the tailoring job worker."""

    try:
        lines = CONTROLLER.run_worker(
            TailorWorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cv_tailor.command("watch")
@_DB_PATH_OPTION
@click.option("--generation-id", type=click.IntRange(min=1), required=True, help="Generation id.")
def watch(db_path: Path | None, generation_id: int) -> None:
    """Stream live progress events for a generation."""

    CONTROLLER.watch(
        TailorGenerationCommand(db_path=db_path, generation_id=generation_id),
        write=lambda chunk: click.echo(chunk, nl=False),
        flush=sys.stdout.flush,
    )


@cv_tailor.command("status")
@_DB_PATH_OPTION
@click.option("--generation-id", type=click.IntRange(min=1), required=True, help="Generation id.")
@click.option(
    "--show",
    "show_artifact",
    type=click.Choice(["plan", "draft", "rendered", "plain_text"], case_sensitive=False),
    default=None,
    help="Print the stored artifact text.",
)
def status(db_path: Path | None, generation_id: int, show_artifact: str | None) -> None:
    """Show generation status and stored artifacts."""

    try:
        lines = CONTROLLER.status(
            TailorStatusCommand(
                db_path=db_path,
                generation_id=generation_id,
                show_artifact=show_artifact,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cv_tailor.command("cancel")
@_DB_PATH_OPTION
@click.option("--generation-id", type=click.IntRange(min=1), required=True, help="Generation id.")
def cancel(db_path: Path | None, generation_id: int) -> None:
    """Cancel a queued generation and drop its pending job."""

    try:
        lines = CONTROLLER.cancel(
            TailorGenerationCommand(db_path=db_path, generation_id=generation_id),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cv_tailor.command("jobs")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(["pending", "reserved", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List queued jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            TailorJobsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@cv_tailor.command("usage")
@_DB_PATH_OPTION
@click.option("--owner-id", type=click.IntRange(min=1), default=None, help="Owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max recent ledger entries to print.",
)
def usage(db_path: Path | None, owner_id: int | None, limit: int) -> None:
    """Show LLM token and cost usage."""

    _emit_lines(
        CONTROLLER.usage(
            TailorUsageCommand(db_path=db_path, owner_id=owner_id, limit=limit),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cv_tailor()
