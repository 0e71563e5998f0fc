"""Shared test fixtures and fakes."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from unbias_pipeline.analysis.providers import LlmProvider
from unbias_pipeline.extraction.content import ExtractedContent, FetchStrategy, ImageRef
from unbias_pipeline.jobs.errors import ErrorKind
from unbias_pipeline.jobs.models import JobUpdateEvent
from unbias_pipeline.jobs.repository import JobRepository

ANALYSIS_PAYLOAD = {
    "slant": {"category": "center", "confidence": 0.7, "rationale": "Balanced sourcing."},
    "claims": [{"claim": "Rates rose.", "assessment": "supported", "evidence": "Central bank."}],
    "report": {"summary": "Even-handed coverage.", "dimensions": {"tone": "neutral"}},
}

_LEGACY_ENV = (
    "REDIS_URL",
    "ANALYSIS_LLM_PROVIDER",
    "GEMINI_API_KEY",
    "GEMINI_MODEL_NAME",
    "LLM_MODEL_NAME",
    "OPENAI_API_KEY",
    "DIFFBOT_API_KEY",
    "FIRECRAWL_API_KEY",
    "SCRAPER_API_KEY",
    "SOCKET_PORT",
    "FRONTEND_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    names = [name for name in os.environ if name.startswith("UNBIAS_")]
    for name in [*names, *_LEGACY_ENV]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


class RecordingPublisher:
    """Stands in for ``UpdatePublisher``; optionally fails on chosen statuses."""

    def __init__(self, *, fail_on: tuple[str, ...] = ()) -> None:
        self.events: list[JobUpdateEvent] = []
        self.fail_on = fail_on

    async def publish(self, event: JobUpdateEvent) -> int:
        if event.status.value in self.fail_on:
            raise ConnectionError("pub/sub connection lost")
        self.events.append(event)
        return 1

    def statuses(self, job_id: str | None = None) -> list[str]:
        return [
            event.status.value
            for event in self.events
            if job_id is None or event.job_id == job_id
        ]


class ScriptedExtraction:
    """Stands in for ``ContentExtractionChain``; returns or raises the scripted items in order."""

    def __init__(self, *results: ExtractedContent | Exception) -> None:
        self._results = list(results)
        self.calls: list[str] = []

    async def extract(self, url: str) -> ExtractedContent:
        self.calls.append(url)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


class ScriptedProvider(LlmProvider):
    """LLM provider whose completions come from a script instead of an SDK."""

    def __init__(
        self,
        *replies: str | Exception,
        name: str = "Gemini",
        error_kind: ErrorKind = ErrorKind.PRIMARY_LLM,
        max_prompt_chars: int = 100_000,
    ) -> None:
        super().__init__(model="scripted", max_prompt_chars=max_prompt_chars)
        self.name = name
        self.error_kind = error_kind
        self._replies = list(replies)
        self.prompts: list[str] = []

    async def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def analysis_json(**overrides: Any) -> str:
    return json.dumps({**ANALYSIS_PAYLOAD, **overrides})


def make_content(
    *,
    title: str | None = "Rates rise again",
    text: str | None = "The central bank raised rates by a quarter point on Tuesday.",
    fetch_strategy: FetchStrategy = FetchStrategy.DIRECT,
    original_url: str = "https://example.com/news/rates",
    images: list[ImageRef] | None = None,
    **kwargs: Any,
) -> ExtractedContent:
    return ExtractedContent(
        title=title,
        text=text,
        fetch_strategy=fetch_strategy,
        original_url=original_url,
        images=images or [],
        **kwargs,
    )
