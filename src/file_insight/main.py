"""CLI entrypoint for file-insight."""

import logging
from pathlib import Path

import rich_click as click

from file_insight import __version__
from file_insight.queue.controllers import (
    DbCommand,
    InspectJobCommand,
    ListJobsCommand,
    QueueCliController,
    ShowFileCommand,
    UploadCommand,
    WorkerCommand,
)
from file_insight.queue.models import JobState

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="file-insight")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def file_insight(log_level: str) -> None:
    """File upload analysis CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@file_insight.command("upload")
@DB_PATH_OPTION
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--mime-type", default=None, help="Content type; guessed from the name if omitted.")
@click.option(
    "--priority",
    type=int,
    default=None,
    help="Job priority, lower is served first. Defaults to FILE_INSIGHT_QUEUE_DEFAULT_PRIORITY.",
)
def upload(db_path: Path | None, path: Path, mime_type: str | None, priority: int | None) -> None:
    """Store a file record and queue it for analysis."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.upload,
            UploadCommand(db_path=db_path, path=path, mime_type=mime_type, priority=priority),
        ),
    )


@file_insight.group()
def jobs() -> None:
    """Analysis job queue commands."""


@jobs.command("worker")
@DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Process at most one job.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads. Defaults to FILE_INSIGHT_WORKER_CONCURRENCY.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs (single worker only).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a single worker exits.",
)
@click.option(
    "--forever",
    is_flag=True,
    help="Keep polling until interrupted; the pool also runs the periodic reaper.",
)
def jobs_worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    concurrency: int | None,
    max_jobs: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Run analysis workers."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                concurrency=concurrency,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                forever=forever,
            ),
        ),
    )


@jobs.command("stats")
@DB_PATH_OPTION
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts per state."""

    _emit_lines(_run(QUEUE_CONTROLLER.stats, DbCommand(db_path=db_path)))


@jobs.command("reconcile")
@DB_PATH_OPTION
def jobs_reconcile(db_path: Path | None) -> None:
    """Recompute per-state counters from job rows."""

    _emit_lines(_run(QUEUE_CONTROLLER.reconcile, DbCommand(db_path=db_path)))


@jobs.command("reap")
@DB_PATH_OPTION
def jobs_reap(db_path: Path | None) -> None:
    """Remove completed and failed jobs past their retention."""

    _emit_lines(_run(QUEUE_CONTROLLER.reap, DbCommand(db_path=db_path)))


@jobs.command("list")
@DB_PATH_OPTION
@click.option(
    "--state",
    type=click.Choice([state.value for state in JobState], case_sensitive=False),
    default=None,
    help="Only jobs in this state.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, state: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.list_jobs,
            ListJobsCommand(db_path=db_path, state=state, limit=limit),
        ),
    )


@jobs.command("inspect")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit_lines(
        _run(QUEUE_CONTROLLER.inspect_job, InspectJobCommand(db_path=db_path, job_id=job_id)),
    )


@file_insight.group()
def files() -> None:
    """File record commands."""


@files.command("show")
@DB_PATH_OPTION
@click.option("--file-id", required=True, help="File id.")
def files_show(db_path: Path | None, file_id: str) -> None:
    """Show a file record with its analysis results."""

    _emit_lines(
        _run(QUEUE_CONTROLLER.show_file, ShowFileCommand(db_path=db_path, file_id=file_id)),
    )


def _run(handler, command):  # noqa: ANN001, ANN202
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    file_insight()
