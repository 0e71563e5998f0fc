"""CLI entrypoint for unbias-pipeline."""

from pathlib import Path

import rich_click as click

from unbias_pipeline import __version__
from unbias_pipeline.controllers import (
    CliController,
    CommandResult,
    DbInitCommand,
    JobHistoryCommand,
    RealtimeServeCommand,
    ShowJobCommand,
    SubmitJobCommand,
    WorkerRunCommand,
)
from unbias_pipeline.jobs.models import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from unbias_pipeline.logging_setup import configure_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="unbias")
@click.option("--log-level", default=None, help="Root log level, overrides UNBIAS_LOG_LEVEL.")
def unbias(log_level: str | None) -> None:
    """Article analysis pipeline CLI."""

    configure_logging(log_level)


@unbias.group()
def db() -> None:
    """Job store commands."""


@db.command("init")
@DB_PATH_OPTION
def db_init(db_path: Path | None) -> None:
    """Create or migrate the job store schema."""

    _emit(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@unbias.group()
def jobs() -> None:
    """Analysis job commands."""


@jobs.command("submit")
@DB_PATH_OPTION
@click.argument("url")
@click.option(
    "--language",
    type=click.Choice(SUPPORTED_LANGUAGES),
    default=DEFAULT_LANGUAGE,
    show_default=True,
    help="Language of the generated analysis.",
)
def jobs_submit(db_path: Path | None, url: str, language: str) -> None:
    """Create a job for URL and enqueue it, or reuse a completed analysis."""

    _emit(CONTROLLER.submit(SubmitJobCommand(db_path=db_path, url=url, language=language)))


@jobs.command("show")
@DB_PATH_OPTION
@click.argument("job_id")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Show status, article fields and results of one job."""

    _emit(CONTROLLER.show(ShowJobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("history")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many completed jobs to list.",
)
def jobs_history(db_path: Path | None, limit: int) -> None:
    """List the most recently completed jobs."""

    _emit(CONTROLLER.history(JobHistoryCommand(db_path=db_path, limit=limit)))


@unbias.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
def queue_stats() -> None:
    """Show job counts per queue state."""

    _emit(CONTROLLER.queue_stats())


@unbias.group()
def worker() -> None:
    """Analysis worker commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs processed in parallel. Defaults to UNBIAS_WORKER_CONCURRENCY.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after starting this many jobs.",
)
@click.option(
    "--stop-when-idle",
    is_flag=True,
    default=False,
    help="Exit once the queue has nothing waiting or delayed.",
)
def worker_run(
    db_path: Path | None,
    concurrency: int | None,
    max_jobs: int | None,
    stop_when_idle: bool,
) -> None:
    """Consume analysis jobs until interrupted."""

    try:
        result = CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                concurrency=concurrency,
                max_jobs=max_jobs,
                stop_when_idle=stop_when_idle,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit(result)


@unbias.group()
def realtime() -> None:
    """Realtime update server commands."""


@realtime.command("serve")
@click.option("--host", default=None, help="Bind address. Defaults to UNBIAS_REALTIME_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Bind port. Defaults to UNBIAS_REALTIME_PORT or SOCKET_PORT.",
)
def realtime_serve(host: str | None, port: int | None) -> None:
    """Serve Socket.IO job updates fanned out from Redis."""

    CONTROLLER.serve_realtime(RealtimeServeCommand(host=host, port=port))


def _emit(result: CommandResult) -> None:
    for line in result.lines:
        click.echo(line)
    if not result.success:
        raise click.ClickException("Command failed.")


def main() -> None:
    unbias()


if __name__ == "__main__":  # pragma: no cover
    main()
