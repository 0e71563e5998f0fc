"""Producer-side job submission: validate, dedupe, persist, enqueue."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from unbias_pipeline.jobs.models import (
    DEFAULT_LANGUAGE,
    SUPPORTED_LANGUAGES,
    AnalysisJobData,
    JobView,
    SubmissionMetadata,
)
from unbias_pipeline.jobs.repository import JobRepository
from unbias_pipeline.queue.redis_queue import JobQueue
from unbias_pipeline.urls import extract_domain, normalize_url

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmissionResult:
    job: JobView
    reused: bool
    queue_job_id: str | None = None


def validate_submission(url: str, language: str) -> None:
    """Raise ``ValueError`` for non-http(s) URLs and unsupported languages."""

    parsed = urlsplit((url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: {url!r}")
    if language not in SUPPORTED_LANGUAGES:
        raise ValueError(
            f"Unsupported language {language!r}; expected one of {', '.join(SUPPORTED_LANGUAGES)}.",
        )


class JobSubmissionService:
    """Create a job and enqueue it, or hand back an existing completed analysis."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        queue: JobQueue,
        reuse_existing_analysis: bool = True,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.reuse_existing_analysis = reuse_existing_analysis

    async def submit(
        self,
        url: str,
        language: str = DEFAULT_LANGUAGE,
        metadata: SubmissionMetadata | None = None,
    ) -> SubmissionResult:
        url = url.strip()
        validate_submission(url, language)
        normalized = normalize_url(url)
        logger.info("Submission for domain %s (%s)", extract_domain(url), language)

        if self.reuse_existing_analysis:
            existing = await asyncio.to_thread(
                self.repository.find_completed_job_by_normalized_url_and_language,
                normalized,
                language,
            )
            if existing is not None:
                logger.info("Reusing completed analysis %s for %s", existing.job_id, url)
                return SubmissionResult(job=existing, reused=True)

        job = await asyncio.to_thread(
            self.repository.create_job,
            url,
            language,
            normalized,
            metadata,
        )
        queue_job_id = await self.queue.enqueue(
            AnalysisJobData(job_id=job.job_id, url=url, language=language),
        )
        return SubmissionResult(job=job, reused=False, queue_job_id=queue_job_id)
