"""LLM providers producing ``{slant, claims, report}`` analyses."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from google import genai
from google.genai import types as genai_types
from openai import AsyncOpenAI

from unbias_pipeline.analysis.json_extract import AnalysisParseError, extract_json
from unbias_pipeline.analysis.prompts import MAX_PROMPT_CHARS, build_analysis_prompt
from unbias_pipeline.jobs.errors import ErrorKind
from unbias_pipeline.jobs.models import AnalysisResults

logger = logging.getLogger(__name__)

RESULT_KEYS = ("slant", "claims", "report")


class LlmProvider(ABC):
    """Shared prompt, parse and validation flow; subclasses implement one completion call."""

    name: str
    error_kind: ErrorKind

    def __init__(
        self,
        *,
        model: str,
        temperature: float = 0.3,
        max_prompt_chars: int = MAX_PROMPT_CHARS,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_prompt_chars = max_prompt_chars

    async def analyze(self, title: str, text: str, language: str) -> AnalysisResults:
        prompt = build_analysis_prompt(title, text, language, max_chars=self.max_prompt_chars)
        if prompt.truncated:
            logger.info(
                "Article text of %s chars truncated to fit %s-char prompt for %s",
                prompt.original_text_chars,
                self.max_prompt_chars,
                self.name,
            )
        raw = await self._complete(prompt.text)
        return parse_analysis_payload(extract_json(raw))

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        """Send ``prompt`` and return the model's raw text output."""


def parse_analysis_payload(payload: Any) -> AnalysisResults:
    """Validate model JSON; an object without any result key is a parse failure."""

    if isinstance(payload, list) and len(payload) == 1 and isinstance(payload[0], dict):
        payload = payload[0]
    if not isinstance(payload, dict):
        raise AnalysisParseError(f"Expected a JSON object, got {type(payload).__name__}.")
    if not any(key in payload for key in RESULT_KEYS):
        raise AnalysisParseError(
            f"Model JSON has none of the expected keys {', '.join(RESULT_KEYS)}.",
        )
    return AnalysisResults.from_dict(payload)


class GeminiProvider(LlmProvider):
    name = "Gemini"
    error_kind = ErrorKind.PRIMARY_LLM

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-1.5-pro",
        temperature: float = 0.3,
        max_prompt_chars: int = MAX_PROMPT_CHARS,
        timeout_seconds: float = 120.0,
        client: Any = None,
    ) -> None:
        super().__init__(model=model, temperature=temperature, max_prompt_chars=max_prompt_chars)
        self.client = (
            client
            if client is not None
            else genai.Client(
                api_key=api_key,
                http_options=genai_types.HttpOptions(timeout=int(timeout_seconds * 1000)),
            )
        )

    async def _complete(self, prompt: str) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                temperature=self.temperature,
                response_mime_type="application/json",
            ),
        )
        return response.text or ""


class OpenAIProvider(LlmProvider):
    name = "OpenAI"
    error_kind = ErrorKind.SECONDARY_LLM

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o",
        temperature: float = 0.3,
        max_prompt_chars: int = MAX_PROMPT_CHARS,
        timeout_seconds: float = 120.0,
        client: Any = None,
    ) -> None:
        super().__init__(model=model, temperature=temperature, max_prompt_chars=max_prompt_chars)
        self.client = (
            client
            if client is not None
            else AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=3)
        )

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
