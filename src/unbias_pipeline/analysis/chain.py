"""Primary/fallback analysis across the configured LLM providers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from unbias_pipeline.analysis.json_extract import AnalysisParseError
from unbias_pipeline.analysis.providers import GeminiProvider, LlmProvider, OpenAIProvider
from unbias_pipeline.config import LlmSettings
from unbias_pipeline.jobs.errors import JobProcessingError, classify_failure
from unbias_pipeline.jobs.models import AnalysisResults

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AnalysisOutcome:
    results: AnalysisResults
    provider: str
    used_fallback: bool


def select_primary_provider(settings: LlmSettings) -> str:
    """Gemini unless OpenAI is explicitly selected and has credentials."""

    if settings.provider == "openai" and settings.has_credentials("openai"):
        return "openai"
    return "gemini"


class AnalysisChain:
    """Call the primary provider; on any error try the other one once.

    When both fail the primary's error is raised, classified under the primary
    provider's kind.
    """

    def __init__(self, *, primary: LlmProvider, fallback: LlmProvider | None = None) -> None:
        self.primary = primary
        self.fallback = fallback

    @classmethod
    def from_settings(cls, settings: LlmSettings) -> AnalysisChain:
        providers: dict[str, LlmProvider] = {}
        if settings.has_credentials("gemini"):
            providers["gemini"] = GeminiProvider(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                temperature=settings.temperature,
                max_prompt_chars=settings.max_prompt_chars,
                timeout_seconds=settings.request_timeout_seconds,
            )
        if settings.has_credentials("openai"):
            providers["openai"] = OpenAIProvider(
                api_key=settings.openai_api_key,
                model=settings.openai_model,
                temperature=settings.temperature,
                max_prompt_chars=settings.max_prompt_chars,
                timeout_seconds=settings.request_timeout_seconds,
            )
        if not providers:
            raise ValueError("No LLM provider has credentials configured.")

        primary_name = select_primary_provider(settings)
        if primary_name not in providers:
            primary_name = next(iter(providers))
        fallback_name = next((name for name in providers if name != primary_name), None)
        return cls(
            primary=providers[primary_name],
            fallback=providers[fallback_name] if fallback_name else None,
        )

    async def analyze(
        self,
        title: str,
        text: str,
        language: str,
        *,
        job_id: str | None = None,
    ) -> AnalysisOutcome:
        try:
            results = await self.primary.analyze(title, text, language)
            return AnalysisOutcome(results=results, provider=self.primary.name, used_fallback=False)
        except Exception as primary_error:  # noqa: BLE001
            if self.fallback is None:
                raise JobProcessingError(
                    classify_failure(
                        primary_error,
                        default_kind=self.primary.error_kind,
                        job_id=job_id,
                        context=f"Failed to analyze content with {self.primary.name}",
                    ),
                ) from primary_error

            logger.warning(
                "%s analysis failed for job %s (%s); falling back to %s",
                self.primary.name,
                job_id,
                _describe(primary_error),
                self.fallback.name,
            )
            try:
                results = await self.fallback.analyze(title, text, language)
            except Exception as fallback_error:  # noqa: BLE001
                logger.error(
                    "Fallback %s analysis also failed for job %s: %s",
                    self.fallback.name,
                    job_id,
                    _describe(fallback_error),
                )
                raise JobProcessingError(
                    classify_failure(
                        primary_error,
                        default_kind=self.primary.error_kind,
                        job_id=job_id,
                        context=(
                            f"Failed to analyze content with {self.primary.name} "
                            f"and fallback {self.fallback.name}"
                        ),
                    ),
                ) from primary_error
            return AnalysisOutcome(results=results, provider=self.fallback.name, used_fallback=True)


def _describe(error: Exception) -> str:
    if isinstance(error, AnalysisParseError):
        return f"unparseable output: {error}"
    return str(error) or type(error).__name__
