"""Failure values carried across the worker boundary and their classification."""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import Enum

import httpx

RATE_LIMIT_MAX_RETRIES = 5
RATE_LIMIT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0


class ErrorKind(str, Enum):
    """Error taxonomy; the value prefixes persisted error messages."""

    DATABASE = "DATABASE_ERROR"
    EXTRACTION_SERVICE = "EXTRACTION_SERVICE_ERROR"
    PRIMARY_LLM = "PRIMARY_LLM_ERROR"
    SECONDARY_LLM = "SECONDARY_LLM_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    REALTIME_TRANSPORT = "REALTIME_TRANSPORT_ERROR"
    NETWORK = "NETWORK_ERROR"
    INTERNAL = "INTERNAL_ERROR"
    RATE_LIMIT = "RATE_LIMIT_ERROR"
    TIMEOUT = "TIMEOUT_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"


@dataclass(frozen=True, slots=True)
class JobFailure:
    """Classified failure with the retry budget attached where it was raised."""

    kind: ErrorKind
    message: str
    job_id: str | None = None
    retryable: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_seconds: float | None = None

    def formatted(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def for_job(self, job_id: str | None) -> JobFailure:
        if job_id is None or self.job_id == job_id:
            return self
        return replace(self, job_id=job_id)


class JobProcessingError(Exception):
    """Raised with a ``JobFailure`` payload; the only error type the worker re-raises."""

    def __init__(self, failure: JobFailure) -> None:
        super().__init__(failure.formatted())
        self.failure = failure


class JobNotFoundError(LookupError):
    """Job id is absent from the store."""


class JobTransitionError(ValueError):
    """Requested status change would move a job backwards or out of a terminal state."""


class MissingArticleContentError(LookupError):
    """Stored job has no title or no text to analyze."""


def build_failure(
    kind: ErrorKind,
    message: str,
    *,
    job_id: str | None = None,
    retryable: bool = True,
) -> JobFailure:
    """Attach the retry budget for ``kind``: rate limits get one more attempt and a longer delay."""

    if not retryable:
        return JobFailure(kind=kind, message=message, job_id=job_id, retryable=False)
    if kind is ErrorKind.RATE_LIMIT:
        return JobFailure(
            kind=kind,
            message=message,
            job_id=job_id,
            retryable=True,
            max_retries=RATE_LIMIT_MAX_RETRIES,
            retry_delay_seconds=RATE_LIMIT_RETRY_DELAY_SECONDS,
        )
    return JobFailure(
        kind=kind,
        message=message,
        job_id=job_id,
        retryable=True,
        max_retries=DEFAULT_MAX_RETRIES,
        retry_delay_seconds=DEFAULT_RETRY_DELAY_SECONDS,
    )


_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "resource_exhausted",
    "quota",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "api key not valid",
    "authentication",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "etimedout",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "connection error",
    "network error",
    "socket hang up",
    "temporarily unavailable",
    "could not resolve host",
)
_STATUS_429 = re.compile(r"\b429\b")
# Article slugs and query strings often contain words like "quota" or "timeout".
_URL = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)


def classify_failure(
    error: BaseException,
    *,
    default_kind: ErrorKind,
    job_id: str | None = None,
    default_retryable: bool = True,
    context: str | None = None,
) -> JobFailure:
    """Map an exception to a ``JobFailure``.

    An existing ``JobProcessingError`` keeps its failure. Store errors are never
    retryable. Otherwise the exception chain is matched against rate-limit,
    authentication, timeout and network signatures before ``default_kind``.
    """

    if isinstance(error, JobProcessingError):
        return error.failure.for_job(job_id)

    message = f"{context}: {error}" if context else str(error) or type(error).__name__

    if any(
        isinstance(item, (JobNotFoundError, JobTransitionError, MissingArticleContentError))
        for item in _exception_chain(error)
    ):
        return build_failure(ErrorKind.DATABASE, message, job_id=job_id, retryable=False)

    status_code = _status_code(error)
    haystack = " ".join(_URL.sub(" ", str(item)).lower() for item in _exception_chain(error))

    if (
        status_code == 429
        or _STATUS_429.search(haystack)
        or _first_match(haystack, _RATE_LIMIT_PATTERNS)
    ):
        return build_failure(ErrorKind.RATE_LIMIT, message, job_id=job_id)
    if status_code in (401, 403) or _first_match(haystack, _AUTH_PATTERNS):
        return build_failure(ErrorKind.AUTHENTICATION, message, job_id=job_id, retryable=False)
    if _has_type(error, (TimeoutError, httpx.TimeoutException)) or _first_match(
        haystack,
        _TIMEOUT_PATTERNS,
    ):
        return build_failure(ErrorKind.TIMEOUT, message, job_id=job_id)
    if _has_type(error, (ConnectionError, httpx.TransportError)) or _first_match(
        haystack,
        _NETWORK_PATTERNS,
    ):
        return build_failure(ErrorKind.NETWORK, message, job_id=job_id)

    return build_failure(default_kind, message, job_id=job_id, retryable=default_retryable)


def should_redeliver(failure: JobFailure, *, attempts_made: int, queue_attempts: int) -> bool:
    """Decide between queue redelivery and finalizing the job as failed.

    ``attempts_made`` counts earlier deliveries of the same queue job. The budget
    is the smaller of the queue's attempts and the current error's ``max_retries``.
    """

    if not failure.retryable:
        return False
    return attempts_made < min(queue_attempts, failure.max_retries) - 1


def _exception_chain(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _has_type(error: BaseException, types: tuple[type[BaseException], ...]) -> bool:
    return any(isinstance(item, types) for item in _exception_chain(error))


def _status_code(error: BaseException) -> int | None:
    for item in _exception_chain(error):
        if isinstance(item, httpx.HTTPStatusError):
            return item.response.status_code
        for attribute in ("status_code", "code"):
            value = getattr(item, attribute, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
