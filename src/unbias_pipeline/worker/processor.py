"""Per-job state machine: extract, persist, analyze, finalize."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError

from unbias_pipeline.analysis.chain import AnalysisChain
from unbias_pipeline.extraction.chain import ContentExtractionChain
from unbias_pipeline.extraction.content import (
    ExtractedContent,
    create_minimal_metadata,
    select_preview_image,
)
from unbias_pipeline.jobs.errors import (
    ErrorKind,
    JobFailure,
    JobProcessingError,
    build_failure,
    classify_failure,
    should_redeliver,
)
from unbias_pipeline.jobs.models import (
    AnalysisResults,
    ArticleFields,
    JobStatus,
    JobUpdateEvent,
    JobView,
)
from unbias_pipeline.jobs.repository import JobRepository
from unbias_pipeline.queue.redis_queue import QueueJob
from unbias_pipeline.realtime.publisher import UpdatePublisher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class JobOutcome:
    """Non-raising result returned to the queue."""

    job_id: str
    status: JobStatus | None
    error: str | None = None
    provider: str | None = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETE and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "provider": self.provider,
            "skipped": self.skipped,
        }


class JobProcessor:
    """Drive one delivered job through the pipeline.

    Returns a ``JobOutcome`` when the job is finalized. Raises
    ``JobProcessingError`` only to ask the queue for a redelivery.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        publisher: UpdatePublisher,
        extraction: ContentExtractionChain,
        analysis: AnalysisChain,
    ) -> None:
        self.repository = repository
        self.publisher = publisher
        self.extraction = extraction
        self.analysis = analysis

    async def process(self, job: QueueJob) -> JobOutcome:
        job_id = job.data.job_id
        url = job.data.url
        language = job.data.language
        started = time.monotonic()
        logger.info(
            "Starting job %s for %s (%s), delivery %s/%s",
            job_id or "<missing>",
            url or "<missing>",
            language,
            job.attempts_made + 1,
            job.max_attempts,
        )
        try:
            if not job_id or not url:
                raise JobProcessingError(
                    build_failure(
                        ErrorKind.VALIDATION,
                        "Invalid job data: jobId and url are required",
                        job_id=job_id or None,
                        retryable=False,
                    ),
                )

            current = await self._store(self.repository.get_job, job_id, context="Failed to load job")
            if current.status.is_terminal:
                logger.warning(
                    "Job %s already %s; acknowledging duplicate delivery",
                    job_id,
                    current.status.value,
                )
                return JobOutcome(job_id=job_id, status=current.status, skipped=True)

            await self.update_job_status(job_id, JobStatus.PROCESSING)
            await self.update_job_status(job_id, JobStatus.FETCHING)

            content = await self._extract(job_id, url)
            await self._save_content(job_id, current, content)
            title, text = await self._store(
                self.repository.get_job_title_and_text,
                job_id,
                context="Failed to retrieve article content from database",
            )

            await self.update_job_status(job_id, JobStatus.ANALYZING)
            outcome = await self.analysis.analyze(title, text, language, job_id=job_id)
            await self._complete(job_id, outcome.results)
            logger.info("Job %s complete via %s", job_id, outcome.provider)
            return JobOutcome(job_id=job_id, status=JobStatus.COMPLETE, provider=outcome.provider)
        except Exception as error:  # noqa: BLE001
            failure = classify_failure(
                error,
                default_kind=ErrorKind.INTERNAL,
                job_id=job_id or None,
                default_retryable=False,
            )
            return await self._handle_failure(job, failure, error)
        finally:
            logger.info(
                "Finished processing job %s in %.2fs",
                job_id or "<missing>",
                time.monotonic() - started,
            )

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        details: dict[str, Any] | None = None,
    ) -> JobView:
        """Persist an in-progress transition, then publish it."""

        view = await self._store(
            self.repository.update_job_status,
            job_id,
            status,
            details,
            context=f"Error updating job status to {status.value}",
        )
        try:
            await self.publisher.publish(JobUpdateEvent(job_id=job_id, status=status))
        except Exception as error:  # noqa: BLE001
            raise JobProcessingError(
                build_failure(
                    ErrorKind.REALTIME_TRANSPORT,
                    f"Failed to publish {status.value} update: {error}",
                    job_id=job_id,
                ),
            ) from error
        logger.info("Job %s -> %s", job_id, status.value)
        return view

    async def mark_job_as_failed(self, job_id: str, failure: JobFailure) -> None:
        """Durably record ``failure``; never raises."""

        message = failure.formatted()
        try:
            await asyncio.to_thread(self.repository.update_job_as_failed, job_id, message)
        except Exception:  # noqa: BLE001
            logger.critical("Failed to mark job %s as failed (%s)", job_id, message, exc_info=True)
            return
        logger.error("Job %s marked as failed: %s", job_id, message)
        await self._publish_terminal(JobUpdateEvent(job_id=job_id, status=JobStatus.FAILED, error=message))

    async def _handle_failure(
        self,
        job: QueueJob,
        failure: JobFailure,
        error: Exception,
    ) -> JobOutcome:
        job_id = job.data.job_id
        if should_redeliver(
            failure,
            attempts_made=job.attempts_made,
            queue_attempts=job.max_attempts,
        ):
            logger.warning(
                "Job %s failed on delivery %s/%s with retryable %s; requesting redelivery",
                job_id,
                job.attempts_made + 1,
                job.max_attempts,
                failure.kind.value,
            )
            if isinstance(error, JobProcessingError) and error.failure == failure:
                raise error
            raise JobProcessingError(failure) from error

        if not job_id:
            logger.critical("Dropping job without id: %s", failure.formatted())
            return JobOutcome(job_id="", status=None, error=failure.formatted())

        await self.mark_job_as_failed(job_id, failure)
        return JobOutcome(job_id=job_id, status=JobStatus.FAILED, error=failure.formatted())

    async def _extract(self, job_id: str, url: str) -> ExtractedContent:
        try:
            content = await self.extraction.extract(url)
        except Exception as error:  # noqa: BLE001
            raise JobProcessingError(
                classify_failure(
                    error,
                    default_kind=ErrorKind.EXTRACTION_SERVICE,
                    job_id=job_id,
                    context="Failed to extract content",
                ),
            ) from error
        if content is None or not (content.text or "").strip():
            raise JobProcessingError(
                build_failure(
                    ErrorKind.EXTRACTION_SERVICE,
                    "Extraction returned no article text",
                    job_id=job_id,
                ),
            )
        return content

    async def _save_content(self, job_id: str, current: JobView, content: ExtractedContent) -> None:
        """Merge extracted fields under submission-time metadata and persist them."""

        submitted = current.article
        article = ArticleFields(
            title=content.title or submitted.title,
            text=content.text,
            author=submitted.author or content.author,
            source_name=submitted.source_name or content.site_name,
            preview_image_url=submitted.preview_image_url or select_preview_image(content.images),
            publication_date=content.date or submitted.publication_date,
            canonical_url=submitted.canonical_url or content.canonical_url or current.url,
        )
        await self._store(
            self.repository.save_extracted_article_content,
            job_id,
            article,
            create_minimal_metadata(content),
            context="Failed to save extracted article content",
        )
        logger.info("Saved extracted content for job %s: %r", job_id, article.title)

    async def _complete(self, job_id: str, results: AnalysisResults) -> None:
        await self._store(
            self.repository.update_job_as_complete,
            job_id,
            results,
            context="Failed to save analysis results",
        )
        await self._publish_terminal(
            JobUpdateEvent(job_id=job_id, status=JobStatus.COMPLETE, results=results.to_dict()),
        )

    async def _publish_terminal(self, event: JobUpdateEvent) -> None:
        # The store already holds the terminal state; clients can poll it.
        try:
            await self.publisher.publish(event)
        except Exception:  # noqa: BLE001
            logger.error(
                "Failed to publish %s update for job %s",
                event.status.value,
                event.job_id,
                exc_info=True,
            )

    async def _store(self, operation: Callable[..., T], *args: Any, context: str) -> T:
        """Run a repository call off the event loop, wrapping errors as database failures."""

        try:
            return await asyncio.to_thread(operation, *args)
        except Exception as error:  # noqa: BLE001
            raise JobProcessingError(
                classify_failure(
                    error,
                    default_kind=ErrorKind.DATABASE,
                    job_id=args[0] if args and isinstance(args[0], str) else None,
                    default_retryable=isinstance(error, OperationalError),
                    context=context,
                ),
            ) from error
