from __future__ import annotations

import allure
import httpx
import pytest

from unbias_pipeline.extraction.services import ExtractionServiceError
from unbias_pipeline.jobs.errors import (
    ErrorKind,
    JobFailure,
    JobNotFoundError,
    JobProcessingError,
    MissingArticleContentError,
    build_failure,
    classify_failure,
    should_redeliver,
)

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Failure Classification & Retry Budget"),
]


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/v1")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def test_rate_limit_gets_larger_budget_and_delay() -> None:
    failure = classify_failure(_status_error(429), default_kind=ErrorKind.PRIMARY_LLM, job_id="j")

    assert failure.kind is ErrorKind.RATE_LIMIT
    assert failure.retryable is True
    assert failure.max_retries == 5
    assert failure.retry_delay_seconds == 5.0
    assert failure.job_id == "j"


def test_rate_limit_detected_from_message() -> None:
    failure = classify_failure(
        RuntimeError("429 RESOURCE_EXHAUSTED: quota exceeded"),
        default_kind=ErrorKind.PRIMARY_LLM,
    )

    assert failure.kind is ErrorKind.RATE_LIMIT


def test_authentication_failures_are_not_retried() -> None:
    failure = classify_failure(_status_error(401), default_kind=ErrorKind.EXTRACTION_SERVICE)

    assert failure.kind is ErrorKind.AUTHENTICATION
    assert failure.retryable is False


def test_timeouts_and_network_errors_use_default_budget() -> None:
    timeout = classify_failure(
        httpx.ReadTimeout("read timed out"),
        default_kind=ErrorKind.EXTRACTION_SERVICE,
    )
    network = classify_failure(
        httpx.ConnectError("boom"),
        default_kind=ErrorKind.EXTRACTION_SERVICE,
    )

    assert timeout.kind is ErrorKind.TIMEOUT
    assert network.kind is ErrorKind.NETWORK
    for failure in (timeout, network):
        assert failure.retryable is True
        assert failure.max_retries == 3
        assert failure.retry_delay_seconds == 2.0


def test_exception_chain_is_inspected() -> None:
    try:
        try:
            raise _status_error(429)
        except httpx.HTTPStatusError as inner:
            raise ExtractionServiceError(
                "Diffbot API error after 3 attempts: HTTP 429",
                service="Diffbot",
            ) from inner
    except ExtractionServiceError as error:
        failure = classify_failure(
            error,
            default_kind=ErrorKind.EXTRACTION_SERVICE,
            context="Failed to extract content",
        )

    assert failure.kind is ErrorKind.RATE_LIMIT
    assert failure.formatted() == (
        "RATE_LIMIT_ERROR: Failed to extract content: Diffbot API error after 3 attempts: HTTP 429"
    )


@pytest.mark.parametrize(
    "url",
    [
        "https://news.example.com/story/84291",
        "https://news.example.com/politics/authentication-bill-passes",
        "https://news.example.com/energy/fishing-quota-talks-stall",
        "https://news.example.com/sport/timeout-called?ref=429",
    ],
)
def test_words_inside_article_urls_do_not_pick_the_kind(url: str) -> None:
    request = httpx.Request("GET", url)
    response = httpx.Response(500, request=request)
    try:
        try:
            raise httpx.HTTPStatusError(
                f"Server error '500 Internal Server Error' for url '{url}'",
                request=request,
                response=response,
            )
        except httpx.HTTPStatusError as inner:
            raise RuntimeError(f"extraction failed for {url}") from inner
    except RuntimeError as error:
        failure = classify_failure(error, default_kind=ErrorKind.EXTRACTION_SERVICE)

    assert failure.kind is ErrorKind.EXTRACTION_SERVICE
    assert failure.retryable is True


def test_rate_limit_text_outside_urls_still_matches() -> None:
    failure = classify_failure(
        RuntimeError("quota exceeded while fetching https://news.example.com/story/1"),
        default_kind=ErrorKind.EXTRACTION_SERVICE,
    )

    assert failure.kind is ErrorKind.RATE_LIMIT


def test_unmatched_errors_fall_back_to_default_kind() -> None:
    failure = classify_failure(
        ValueError("model said no"),
        default_kind=ErrorKind.SECONDARY_LLM,
        default_retryable=False,
    )

    assert failure.kind is ErrorKind.SECONDARY_LLM
    assert failure.retryable is False
    assert failure.formatted() == "SECONDARY_LLM_ERROR: model said no"


@pytest.mark.parametrize(
    "error",
    [JobNotFoundError("Job x not found."), MissingArticleContentError("no text")],
)
def test_store_errors_are_database_failures(error: Exception) -> None:
    failure = classify_failure(error, default_kind=ErrorKind.INTERNAL, job_id="x")

    assert failure.kind is ErrorKind.DATABASE
    assert failure.retryable is False


def test_job_processing_error_passes_through() -> None:
    original = build_failure(ErrorKind.PRIMARY_LLM, "Gemini down", job_id=None)

    failure = classify_failure(
        JobProcessingError(original),
        default_kind=ErrorKind.INTERNAL,
        job_id="job-1",
    )

    assert failure.kind is ErrorKind.PRIMARY_LLM
    assert failure.message == "Gemini down"
    assert failure.job_id == "job-1"
    assert str(JobProcessingError(original)) == "PRIMARY_LLM_ERROR: Gemini down"


def test_redelivery_budget_is_capped_by_queue_attempts() -> None:
    rate_limited = build_failure(ErrorKind.RATE_LIMIT, "slow down")

    # Queue allows 2 attempts; the error's own budget of 5 does not extend it.
    assert should_redeliver(rate_limited, attempts_made=0, queue_attempts=2)
    assert not should_redeliver(rate_limited, attempts_made=1, queue_attempts=2)


def test_redelivery_budget_is_capped_by_error_retries() -> None:
    network = build_failure(ErrorKind.NETWORK, "reset")
    rate_limited = build_failure(ErrorKind.RATE_LIMIT, "slow down")

    assert should_redeliver(network, attempts_made=1, queue_attempts=10)
    assert not should_redeliver(network, attempts_made=2, queue_attempts=10)
    assert should_redeliver(rate_limited, attempts_made=3, queue_attempts=10)
    assert not should_redeliver(rate_limited, attempts_made=4, queue_attempts=10)


def test_mixed_errors_use_the_current_error_budget() -> None:
    # Two rate-limited deliveries followed by an extraction error: the
    # extraction budget of 3 is already spent.
    extraction = build_failure(ErrorKind.EXTRACTION_SERVICE, "empty page")

    assert not should_redeliver(extraction, attempts_made=2, queue_attempts=10)


def test_non_retryable_failures_never_redeliver() -> None:
    failure = JobFailure(kind=ErrorKind.VALIDATION, message="bad", retryable=False)

    assert not should_redeliver(failure, attempts_made=0, queue_attempts=3)
