"""Queue consumer loop with bounded concurrency, lease refresh and graceful shutdown."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from unbias_pipeline.jobs.errors import ErrorKind, JobProcessingError, build_failure
from unbias_pipeline.queue.redis_queue import STALLED_LIMIT_MESSAGE, JobQueue, QueueJob
from unbias_pipeline.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0


class WorkerRunner:
    """Reserve queue jobs and hand them to ``JobProcessor``.

    Finalized outcomes complete the queue job, ``JobProcessingError`` schedules
    a redelivery, and anything else fails the queue job after recording the
    failure on the durable job.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        processor: JobProcessor,
        worker_id: str,
        concurrency: int = 5,
        lock_duration_seconds: float = 300,
        poll_interval_seconds: float = 1.0,
        graceful_shutdown_seconds: float = 60,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.queue = queue
        self.processor = processor
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.lock_duration_seconds = lock_duration_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop = asyncio.Event()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._stop_signal_name: str | None = None

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if self._stop.is_set():
            return
        self._stop_signal_name = signal_name
        logger.info(
            "Worker %s stopping (%s); %s job(s) in flight",
            self.worker_id,
            signal_name or "requested",
            len(self._in_flight),
        )
        self._stop.set()

    async def run(
        self,
        *,
        max_jobs: int | None = None,
        stop_when_idle: bool = False,
    ) -> WorkerRunSummary:
        """Consume jobs until stopped, ``max_jobs`` were started, or the queue is idle."""

        summary = WorkerRunSummary()
        started = 0
        logger.info(
            "Worker %s started on queue %s (concurrency=%s)",
            self.worker_id,
            self.queue.name,
            self.concurrency,
        )
        lease_task = asyncio.create_task(self._refresh_leases())
        try:
            with self._signal_handlers():
                while not self._stop.is_set():
                    if max_jobs is not None and started >= max_jobs:
                        break
                    if len(self._in_flight) >= self.concurrency:
                        await asyncio.wait(
                            set(self._in_flight.values()),
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                        continue

                    await self._recover_stalled()

                    job = await self.queue.reserve(
                        worker_id=self.worker_id,
                        lease_seconds=self.lock_duration_seconds,
                    )
                    if job is None:
                        summary.idle_polls += 1
                        if stop_when_idle and not self._in_flight:
                            if not await self._has_pending():
                                break
                        await self._sleep(self.poll_interval_seconds)
                        continue

                    started += 1
                    task = asyncio.create_task(self._handle(job, summary))
                    self._in_flight[job.id] = task
                    task.add_done_callback(lambda _, job_id=job.id: self._in_flight.pop(job_id, None))

                await self._drain()
        finally:
            lease_task.cancel()
            try:
                await lease_task
            except asyncio.CancelledError:
                pass
        logger.info(
            "Worker %s stopped: processed=%s succeeded=%s failed=%s retried=%s",
            self.worker_id,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.retried,
        )
        return summary

    async def _handle(self, job: QueueJob, summary: WorkerRunSummary) -> None:
        try:
            outcome = await self.processor.process(job)
        except JobProcessingError as error:
            failure = error.failure
            delay = max(job.backoff_delay(), failure.retry_delay_seconds or 0.0)
            await self.queue.retry(job, delay_seconds=delay, error=failure.formatted())
            summary.retried += 1
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error processing queue job %s", job.id)
            failure = build_failure(
                ErrorKind.INTERNAL,
                f"Unhandled worker error: {error}",
                job_id=job.data.job_id or None,
                retryable=False,
            )
            if job.data.job_id:
                await self.processor.mark_job_as_failed(job.data.job_id, failure)
            await self.queue.fail(job, error=failure.formatted())
            summary.processed += 1
            summary.failed += 1
            return

        await self.queue.complete(job, outcome.to_dict())
        summary.processed += 1
        if outcome.succeeded:
            summary.succeeded += 1
        elif outcome.error is not None:
            summary.failed += 1

    async def _drain(self) -> None:
        if not self._in_flight:
            return
        pending = set(self._in_flight.values())
        logger.info("Waiting up to %ss for %s job(s)", self.graceful_shutdown_seconds, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=self.graceful_shutdown_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            # Leases are left to expire so another worker recovers these jobs.
            logger.warning("Cancelled %s job(s) after shutdown timeout", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _recover_stalled(self) -> None:
        stalled = await self.queue.recover_stalled()
        if stalled.requeued:
            logger.warning("Recovered %s stalled job(s)", len(stalled.requeued))
        for job in stalled.failed:
            if not job.data.job_id:
                continue
            await self.processor.mark_job_as_failed(
                job.data.job_id,
                build_failure(
                    ErrorKind.INTERNAL,
                    STALLED_LIMIT_MESSAGE,
                    job_id=job.data.job_id,
                    retryable=False,
                ),
            )

    async def _refresh_leases(self) -> None:
        interval = max(0.05, self.lock_duration_seconds / 2)
        while True:
            await asyncio.sleep(interval)
            for queue_job_id in list(self._in_flight):
                try:
                    extended = await self.queue.extend_lease(
                        queue_job_id,
                        lease_seconds=self.lock_duration_seconds,
                    )
                except Exception as error:  # noqa: BLE001
                    logger.warning("Could not extend lease on queue job %s: %s", queue_job_id, error)
                    continue
                if not extended:
                    logger.warning("Lost lease on queue job %s", queue_job_id)

    async def _has_pending(self) -> bool:
        counts = await self.queue.counts()
        return counts.delayed > 0 or counts.waiting > 0

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, functools.partial(self.request_stop, signal_name=sig.name))
            except (NotImplementedError, RuntimeError, ValueError):
                # Not on the main thread, or unsupported on this platform.
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
