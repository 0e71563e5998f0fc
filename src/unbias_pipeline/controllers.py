"""Controllers for CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from unbias_pipeline.analysis.chain import AnalysisChain
from unbias_pipeline.config import Settings
from unbias_pipeline.extraction.chain import ContentExtractionChain
from unbias_pipeline.jobs.errors import JobNotFoundError
from unbias_pipeline.jobs.models import DEFAULT_LANGUAGE, JobView
from unbias_pipeline.jobs.repository import JobRepository
from unbias_pipeline.jobs.services import JobSubmissionService
from unbias_pipeline.queue.connections import RedisConnections
from unbias_pipeline.queue.redis_queue import JobQueue
from unbias_pipeline.realtime.publisher import UpdatePublisher
from unbias_pipeline.realtime.server import serve
from unbias_pipeline.worker.processor import JobProcessor
from unbias_pipeline.worker.runner import WorkerRunner


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI inputs for job submission."""

    db_path: Path | None
    url: str
    language: str = DEFAULT_LANGUAGE


@dataclass(slots=True)
class ShowJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobHistoryCommand:
    db_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI inputs for the queue worker."""

    db_path: Path | None
    concurrency: int | None = None
    max_jobs: int | None = None
    stop_when_idle: bool = False


@dataclass(slots=True)
class RealtimeServeCommand:
    host: str | None = None
    port: int | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to render and whether the command succeeded."""

    lines: list[str]
    success: bool = True


class CliController:
    """Coordinates store, queue, worker and realtime CLI operations.

    ``connect`` opens Redis connections for a URL; it is called inside the
    command's event loop.
    """

    def __init__(
        self,
        *,
        connect: Callable[[str], RedisConnections] = RedisConnections.from_url,
    ) -> None:
        self._connect = connect

    def init_db(self, command: DbInitCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return CommandResult(lines=[f"Database ready: {settings.db_path}"])

    def submit(self, command: SubmitJobCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)

        async def _submit() -> CommandResult:
            connections = self._connect(settings.redis.url)
            try:
                with _repository(settings) as repository:
                    service = JobSubmissionService(
                        repository=repository,
                        queue=_queue(settings, connections),
                        reuse_existing_analysis=settings.reuse_existing_analysis,
                    )
                    try:
                        result = await service.submit(command.url, command.language)
                    except ValueError as error:
                        return CommandResult(lines=[f"Submission rejected: {error}"], success=False)
            finally:
                await connections.close()

            if result.reused:
                return CommandResult(
                    lines=[
                        f"Existing analysis reused: job_id={result.job.job_id} "
                        f"status={result.job.status.value}",
                    ],
                )
            return CommandResult(
                lines=[
                    f"Job submitted: job_id={result.job.job_id} "
                    f"queue_job_id={result.queue_job_id} language={result.job.language}",
                ],
            )

        return asyncio.run(_submit())

    def show(self, command: ShowJobCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                job = repository.get_job(command.job_id)
            except JobNotFoundError as error:
                return CommandResult(lines=[str(error)], success=False)
        return CommandResult(lines=_render_job(job))

    def history(self, command: JobHistoryCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.list_recent_jobs(limit=command.limit)
        lines = [f"Completed jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} {job.updated_at.isoformat()} [{job.language}] "
                f"{job.article.title or '-'} <{job.url}>",
            )
        return CommandResult(lines=lines)

    def queue_stats(self) -> CommandResult:
        settings = Settings.from_env()

        async def _stats() -> CommandResult:
            connections = self._connect(settings.redis.url)
            try:
                counts = await _queue(settings, connections).counts()
            finally:
                await connections.close()
            return CommandResult(
                lines=[
                    f"Queue {settings.redis.queue_name}: "
                    f"waiting={counts.waiting} active={counts.active} "
                    f"delayed={counts.delayed} completed={counts.completed} "
                    f"failed={counts.failed}",
                ],
            )

        return asyncio.run(_stats())

    def run_worker(self, command: WorkerRunCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        concurrency = command.concurrency or settings.worker.concurrency

        async def _run() -> CommandResult:
            connections = self._connect(settings.redis.url)
            extraction = ContentExtractionChain.from_settings(settings)
            try:
                with _repository(settings) as repository:
                    runner = WorkerRunner(
                        queue=_queue(settings, connections),
                        processor=JobProcessor(
                            repository=repository,
                            publisher=UpdatePublisher(
                                connections.command,
                                channel=settings.redis.updates_channel,
                            ),
                            extraction=extraction,
                            analysis=AnalysisChain.from_settings(settings.llm),
                        ),
                        worker_id=settings.worker.worker_id,
                        concurrency=concurrency,
                        lock_duration_seconds=settings.worker.lock_duration_seconds,
                        poll_interval_seconds=settings.worker.poll_interval_seconds,
                        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
                    )
                    summary = await runner.run(
                        max_jobs=command.max_jobs,
                        stop_when_idle=command.stop_when_idle,
                    )
            finally:
                await extraction.aclose()
                await connections.close()
            return CommandResult(
                lines=[
                    "Worker summary: "
                    f"processed={summary.processed} succeeded={summary.succeeded} "
                    f"failed={summary.failed} retried={summary.retried} "
                    f"idle_polls={summary.idle_polls}",
                ],
            )

        return asyncio.run(_run())

    def serve_realtime(self, command: RealtimeServeCommand) -> None:
        settings = Settings.from_env()
        serve(settings, host=command.host, port=command.port)


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(settings.db_path)
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _queue(settings: Settings, connections: RedisConnections) -> JobQueue:
    return JobQueue(
        connections.command,
        name=settings.redis.queue_name,
        default_attempts=settings.queue.max_attempts,
        default_backoff_seconds=settings.queue.backoff_base_seconds,
        keep_completed=settings.queue.keep_completed,
        keep_failed=settings.queue.keep_failed,
        max_stalled=settings.queue.max_stalled,
    )


def _render_job(job: JobView) -> list[str]:
    lines = [
        f"Job {job.job_id}: status={job.status.value} language={job.language}",
        f"  url={job.url}",
        f"  created={job.created_at.isoformat()} updated={job.updated_at.isoformat()}",
    ]
    if job.article.title:
        lines.append(f"  title={job.article.title}")
    if job.article.source_name or job.article.author:
        lines.append(f"  source={job.article.source_name or '-'} author={job.article.author or '-'}")
    if job.error_message:
        lines.append(f"  error={job.error_message}")
    if job.analysis_results is not None:
        lines.append("  results=" + json.dumps(job.analysis_results.to_dict(), ensure_ascii=False))
    return lines
