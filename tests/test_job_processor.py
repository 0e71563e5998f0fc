from __future__ import annotations

import asyncio
import logging

import allure
import httpx
import pytest

from conftest import (
    ANALYSIS_PAYLOAD,
    RecordingPublisher,
    ScriptedExtraction,
    ScriptedProvider,
    analysis_json,
    make_content,
)
from unbias_pipeline.analysis.chain import AnalysisChain
from unbias_pipeline.extraction.content import ExtractedContent, FetchStrategy, ImageRef
from unbias_pipeline.extraction.services import DiffbotClient, ExtractionServiceError
from unbias_pipeline.jobs.errors import ErrorKind, JobProcessingError
from unbias_pipeline.jobs.models import (
    AnalysisJobData,
    AnalysisResults,
    JobStatus,
    SubmissionMetadata,
)
from unbias_pipeline.jobs.repository import JobRepository
from unbias_pipeline.queue.redis_queue import QueueJob
from unbias_pipeline.worker.processor import JobProcessor

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Job Processing State Machine"),
]

IN_PROGRESS = ["Processing", "Fetching", "Analyzing"]


def _delivery(job_id: str, url: str, *, attempts_made: int = 0, max_attempts: int = 3) -> QueueJob:
    return QueueJob(
        id=f"q-{job_id}",
        data=AnalysisJobData(job_id=job_id, url=url, language="en"),
        attempts_made=attempts_made,
        max_attempts=max_attempts,
        backoff_base_seconds=0.0,
    )


def _processor(
    repository: JobRepository,
    extraction: ScriptedExtraction,
    *,
    primary: ScriptedProvider | None = None,
    fallback: ScriptedProvider | None = None,
    publisher: RecordingPublisher | None = None,
) -> tuple[JobProcessor, RecordingPublisher]:
    publisher = publisher or RecordingPublisher()
    processor = JobProcessor(
        repository=repository,
        publisher=publisher,  # type: ignore[arg-type]
        extraction=extraction,  # type: ignore[arg-type]
        analysis=AnalysisChain(primary=primary or ScriptedProvider(analysis_json()), fallback=fallback),
    )
    return processor, publisher


def test_successful_job_emits_each_status_once(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/news/rates", "en", "https://example.com/news/rates")
    extraction = ScriptedExtraction(
        make_content(
            author="Extracted Author",
            site_name="Example News",
            images=[ImageRef(url="https://cdn.example.com/lead.jpg", primary=True)],
            extra={"humanLanguage": "en"},
        ),
    )
    processor, publisher = _processor(repository, extraction)

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert outcome.succeeded
    assert outcome.provider == "Gemini"
    assert publisher.statuses(job.job_id) == [*IN_PROGRESS, "Complete"]
    complete = publisher.events[-1]
    assert complete.results == ANALYSIS_PAYLOAD
    assert complete.error is None

    stored = repository.get_job(job.job_id)
    assert stored.status is JobStatus.COMPLETE
    assert stored.analysis_results == AnalysisResults.from_dict(ANALYSIS_PAYLOAD)
    assert stored.error_message is None
    assert stored.article.title == "Rates rise again"
    assert stored.article.author == "Extracted Author"
    assert stored.article.preview_image_url == "https://cdn.example.com/lead.jpg"
    assert stored.minimal_metadata["fetchStrategy"] == "direct"
    assert stored.minimal_metadata["humanLanguage"] == "en"
    assert "text" not in stored.minimal_metadata


def test_submission_metadata_wins_over_extracted_fields(repository: JobRepository) -> None:
    job = repository.create_job(
        "https://example.com/a",
        metadata=SubmissionMetadata(
            author="Submitted Author",
            site_name="Submitted Site",
            preview_image_url="https://cdn.example.com/submitted.jpg",
        ),
    )
    extraction = ScriptedExtraction(
        make_content(
            author="Extracted Author",
            site_name="Extracted Site",
            canonical_url="https://example.com/canonical",
            images=[ImageRef(url="https://cdn.example.com/extracted.jpg", primary=True)],
        ),
    )
    processor, _ = _processor(repository, extraction)

    asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    article = repository.get_job(job.job_id).article
    assert article.author == "Submitted Author"
    assert article.source_name == "Submitted Site"
    assert article.preview_image_url == "https://cdn.example.com/submitted.jpg"
    assert article.canonical_url == "https://example.com/a"


def test_transient_extraction_failure_requests_redelivery_then_finalizes(
    repository: JobRepository,
) -> None:
    job = repository.create_job("https://example.com/flaky")
    extraction = ScriptedExtraction(httpx.ConnectError("connection reset by peer"))
    processor, publisher = _processor(repository, extraction)

    for attempts_made in (0, 1):
        with pytest.raises(JobProcessingError) as raised:
            asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=attempts_made)))
        assert raised.value.failure.kind is ErrorKind.NETWORK
        assert repository.get_job(job.job_id).status is JobStatus.FETCHING

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=2)))

    stored = repository.get_job(job.job_id)
    assert outcome.status is JobStatus.FAILED
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == (
        "NETWORK_ERROR: Failed to extract content: connection reset by peer"
    )
    assert stored.analysis_results is None
    assert publisher.statuses(job.job_id) == ["Processing", "Fetching"] * 3 + ["Failed"]
    assert publisher.events[-1].error == stored.error_message


def test_exhausted_extraction_service_fails_the_job(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/b")
    extraction = ScriptedExtraction(
        ExtractionServiceError(
            "Diffbot API error after 3 attempts: HTTP 503",
            service="Diffbot",
            status_code=503,
        ),
    )
    processor, publisher = _processor(repository, extraction)

    for attempts_made in (0, 1):
        with pytest.raises(JobProcessingError) as raised:
            asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=attempts_made)))
        assert raised.value.failure.kind is ErrorKind.EXTRACTION_SERVICE
        assert raised.value.failure.max_retries == 3
    asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=2)))

    stored = repository.get_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert "after 3 attempts" in stored.error_message
    assert stored.error_message.startswith("EXTRACTION_SERVICE_ERROR:")
    assert publisher.statuses(job.job_id).count("Failed") == 1


class DiffbotExtraction:
    """Routes every article through a real ``DiffbotClient`` on a mock transport."""

    def __init__(self, status_code: int, *, api_key: str) -> None:
        self.status_code = status_code
        self.api_key = api_key
        self.requested: list[str] = []

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.requested.append(str(request.url))
        return httpx.Response(self.status_code, text="upstream broke")

    async def extract(self, url: str) -> ExtractedContent:
        async with httpx.AsyncClient(transport=httpx.MockTransport(self._handler)) as client:
            diffbot = DiffbotClient(client, api_key=self.api_key, max_retries=2, sleep=_no_sleep)
            return await diffbot.extract(url, fetch_strategy=FetchStrategy.DIRECT)


async def _no_sleep(_: float) -> None:
    return None


def test_diffbot_token_never_reaches_stored_or_published_errors(
    repository: JobRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    secret = "SECRET-DIFFBOT-KEY"
    job = repository.create_job("https://example.com/news/story-84291")
    extraction = DiffbotExtraction(500, api_key=secret)
    processor, publisher = _processor(repository, extraction)  # type: ignore[arg-type]

    with caplog.at_level(logging.DEBUG, logger="unbias_pipeline"):
        outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=2)))

    stored = repository.get_job(job.job_id)
    assert any(secret in url for url in extraction.requested)
    assert outcome.status is JobStatus.FAILED
    assert stored.error_message.startswith("EXTRACTION_SERVICE_ERROR: Failed to extract content")
    assert "HTTP 500 Internal Server Error" in stored.error_message
    assert secret not in stored.error_message
    assert publisher.events[-1].error == stored.error_message
    assert all(secret not in (event.error or "") for event in publisher.events)
    own_records = [record for record in caplog.records if record.name.startswith("unbias_pipeline")]
    assert own_records
    assert all(secret not in record.getMessage() for record in own_records)


def test_authentication_failure_is_final_on_first_delivery(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    extraction = ScriptedExtraction(
        ExtractionServiceError(
            "Diffbot API error after 3 attempts: Not authorized API token.",
            service="Diffbot",
            status_code=401,
        ),
    )
    processor, publisher = _processor(repository, extraction)

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert outcome.status is JobStatus.FAILED
    assert outcome.error is not None
    assert outcome.error.startswith("AUTHENTICATION_ERROR: Failed to extract content")
    assert publisher.statuses(job.job_id)[-1] == "Failed"


def test_empty_extraction_is_an_extraction_failure(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    processor, _ = _processor(repository, ScriptedExtraction(make_content(text="   ")))

    with pytest.raises(JobProcessingError) as raised:
        asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert raised.value.failure.kind is ErrorKind.EXTRACTION_SERVICE
    assert raised.value.failure.retryable is True


def test_missing_title_fails_without_retry(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    processor, _ = _processor(repository, ScriptedExtraction(make_content(title=None)))

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert outcome.status is JobStatus.FAILED
    assert repository.get_job(job.job_id).error_message.startswith(
        "DATABASE_ERROR: Failed to retrieve article content from database:",
    )


def test_fallback_provider_completes_the_job(repository: JobRepository) -> None:
    job = repository.create_job("https://archive.ph/Qw12e")
    extraction = ScriptedExtraction(
        make_content(
            fetch_strategy=FetchStrategy.ARCHIVE_MIRROR,
            images=[ImageRef(url=None, primary=True, is_archive_image=True)],
        ),
    )
    processor, publisher = _processor(
        repository,
        extraction,
        primary=ScriptedProvider(RuntimeError("model overloaded")),
        fallback=ScriptedProvider(analysis_json(), name="OpenAI", error_kind=ErrorKind.SECONDARY_LLM),
    )

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    stored = repository.get_job(job.job_id)
    assert outcome.provider == "OpenAI"
    assert stored.status is JobStatus.COMPLETE
    assert stored.minimal_metadata["isArchiveContent"] is True
    assert stored.article.preview_image_url is None
    assert publisher.statuses(job.job_id).count("Complete") == 1


def test_both_providers_failing_on_last_delivery_records_primary_error(
    repository: JobRepository,
) -> None:
    job = repository.create_job("https://example.com/a")
    processor, _ = _processor(
        repository,
        ScriptedExtraction(make_content()),
        primary=ScriptedProvider(RuntimeError("model overloaded")),
        fallback=ScriptedProvider("no json here", name="OpenAI", error_kind=ErrorKind.SECONDARY_LLM),
    )

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url, attempts_made=2)))

    assert outcome.status is JobStatus.FAILED
    assert repository.get_job(job.job_id).error_message == (
        "PRIMARY_LLM_ERROR: Failed to analyze content with Gemini and fallback OpenAI: "
        "model overloaded"
    )


def test_terminal_job_redelivery_is_a_no_op(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    repository.update_job_as_complete(job.job_id, AnalysisResults.from_dict(ANALYSIS_PAYLOAD))
    extraction = ScriptedExtraction(make_content())
    processor, publisher = _processor(repository, extraction)

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert outcome.skipped is True
    assert outcome.status is JobStatus.COMPLETE
    assert not outcome.succeeded
    assert publisher.events == []
    assert extraction.calls == []


def test_invalid_payload_is_dropped_without_retry(repository: JobRepository) -> None:
    extraction = ScriptedExtraction(make_content())
    processor, publisher = _processor(repository, extraction)

    outcome = asyncio.run(processor.process(_delivery("", "https://example.com/a")))

    assert outcome.status is None
    assert outcome.error == "VALIDATION_ERROR: Invalid job data: jobId and url are required"
    assert publisher.events == []


def test_unknown_job_is_a_database_failure(repository: JobRepository) -> None:
    processor, _ = _processor(repository, ScriptedExtraction(make_content()))

    outcome = asyncio.run(processor.process(_delivery("missing", "https://example.com/a")))

    assert outcome.status is JobStatus.FAILED
    assert outcome.error is not None
    assert outcome.error.startswith("DATABASE_ERROR: Failed to load job")


def test_publish_failure_on_progress_update_is_retried(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    publisher = RecordingPublisher(fail_on=("Processing",))
    processor, _ = _processor(repository, ScriptedExtraction(make_content()), publisher=publisher)

    with pytest.raises(JobProcessingError) as raised:
        asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert raised.value.failure.kind is ErrorKind.REALTIME_TRANSPORT
    assert repository.get_job(job.job_id).status is JobStatus.PROCESSING


def test_publish_failure_after_completion_keeps_the_result(repository: JobRepository) -> None:
    job = repository.create_job("https://example.com/a")
    publisher = RecordingPublisher(fail_on=("Complete",))
    processor, _ = _processor(repository, ScriptedExtraction(make_content()), publisher=publisher)

    outcome = asyncio.run(processor.process(_delivery(job.job_id, job.url)))

    assert outcome.succeeded
    assert repository.get_job(job.job_id).status is JobStatus.COMPLETE
    assert publisher.statuses(job.job_id) == IN_PROGRESS
