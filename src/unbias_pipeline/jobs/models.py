"""Domain models for analysis jobs and their wire events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

SUPPORTED_LANGUAGES = ("en", "de")
DEFAULT_LANGUAGE = "en"


class JobStatus(str, Enum):
    """Durable job lifecycle states; values are the wire representation."""

    QUEUED = "Queued"
    PROCESSING = "Processing"
    FETCHING = "Fetching"
    ANALYZING = "Analyzing"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


_STATUS_RANK: dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.FETCHING: 2,
    JobStatus.ANALYZING: 3,
    JobStatus.COMPLETE: 4,
    JobStatus.FAILED: 4,
}


def is_allowed_transition(current: JobStatus, target: JobStatus) -> bool:
    """Forward-only lifecycle; ``Processing`` may be re-entered on redelivery."""

    if current.is_terminal:
        return False
    if target.is_terminal or target is JobStatus.PROCESSING:
        return True
    return _STATUS_RANK[target] >= _STATUS_RANK[current]


@dataclass(slots=True)
class SubmissionMetadata:
    """Metadata captured by the producer at submission time."""

    title: str | None = None
    preview_image_url: str | None = None
    author: str | None = None
    site_name: str | None = None
    canonical_url: str | None = None


@dataclass(slots=True)
class ArticleFields:
    """Article columns written after extraction."""

    title: str | None = None
    text: str | None = None
    author: str | None = None
    source_name: str | None = None
    preview_image_url: str | None = None
    publication_date: str | None = None
    canonical_url: str | None = None


@dataclass(slots=True)
class AnalysisResults:
    """Structured LLM output persisted on completion."""

    slant: dict[str, Any] = field(default_factory=dict)
    claims: Any = field(default_factory=list)
    report: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"slant": self.slant, "claims": self.claims, "report": self.report}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AnalysisResults:
        return cls(
            slant=payload.get("slant") or {},
            claims=payload.get("claims") or [],
            report=payload.get("report") or {},
        )


@dataclass(slots=True)
class JobView:
    """Readable job view for worker, CLI and producers."""

    job_id: str
    url: str
    normalized_url: str | None
    language: str
    status: JobStatus
    article: ArticleFields
    analysis_results: AnalysisResults | None
    error_message: str | None
    minimal_metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AnalysisJobData:
    """Queue payload: ``{jobId, url, language}``."""

    job_id: str
    url: str
    language: str = DEFAULT_LANGUAGE

    def to_dict(self) -> dict[str, str]:
        return {"jobId": self.job_id, "url": self.url, "language": self.language}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AnalysisJobData:
        return cls(
            job_id=str(payload.get("jobId") or ""),
            url=str(payload.get("url") or ""),
            language=str(payload.get("language") or DEFAULT_LANGUAGE),
        )


@dataclass(slots=True)
class JobUpdateEvent:
    """Pub/sub payload emitted once per status transition."""

    job_id: str
    status: JobStatus
    results: dict[str, Any] | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jobId": self.job_id, "status": self.status.value}
        if self.results is not None:
            payload["results"] = self.results
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | bytes) -> JobUpdateEvent:
        payload = json.loads(raw)
        if not isinstance(payload, dict) or not payload.get("jobId"):
            raise ValueError("Job update event requires a jobId.")
        return cls(
            job_id=str(payload["jobId"]),
            status=JobStatus(payload["status"]),
            results=payload.get("results"),
            error=payload.get("error"),
        )
