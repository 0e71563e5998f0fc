"""Analysis prompt construction with a hard character budget."""

from __future__ import annotations

from dataclasses import dataclass

from unbias_pipeline.jobs.models import DEFAULT_LANGUAGE

MAX_PROMPT_CHARS = 100_000
MAX_TITLE_CHARS = 1_000
TRUNCATION_MARKER = "...[truncated for token optimization]"
TITLE_ELLIPSIS = "..."

LANGUAGE_NAMES = {"en": "English", "de": "German"}

_TEMPLATE = """You are an impartial media analyst. Assess the article below and answer in {language_name}.

Return exactly one JSON object and nothing else, with these keys:
- "slant": {{"category": string, "confidence": number between 0 and 1, "rationale": string}}
- "claims": [{{"claim": string, "assessment": string, "evidence": string}}]
- "report": {{"summary": string, "dimensions": object}}

Title: {title}

Article:
{text}
"""


@dataclass(slots=True)
class AnalysisPrompt:
    text: str
    truncated: bool
    original_text_chars: int


def build_analysis_prompt(
    title: str,
    text: str,
    language: str = DEFAULT_LANGUAGE,
    *,
    max_chars: int = MAX_PROMPT_CHARS,
) -> AnalysisPrompt:
    """Render the prompt, cutting the article so the whole prompt fits ``max_chars``.

    A cut article ends with ``TRUNCATION_MARKER``. Titles are capped at
    ``MAX_TITLE_CHARS`` or a tenth of ``max_chars``, whichever is smaller.
    """

    language_name = LANGUAGE_NAMES.get(language, LANGUAGE_NAMES[DEFAULT_LANGUAGE])
    title_limit = min(MAX_TITLE_CHARS, max_chars // 10)
    title_cut = len(title) > title_limit
    if title_cut:
        title = title[: max(0, title_limit - len(TITLE_ELLIPSIS))].rstrip() + TITLE_ELLIPSIS

    full = _TEMPLATE.format(language_name=language_name, title=title, text=text)
    if len(full) <= max_chars:
        return AnalysisPrompt(text=full, truncated=title_cut, original_text_chars=len(text))

    overhead = len(_TEMPLATE.format(language_name=language_name, title=title, text=""))
    budget = max_chars - overhead - len(TRUNCATION_MARKER)
    if budget < 0:
        raise ValueError(f"max_chars={max_chars} is too small for the analysis prompt template")
    shortened = text[:budget] + TRUNCATION_MARKER
    return AnalysisPrompt(
        text=_TEMPLATE.format(language_name=language_name, title=title, text=shortened),
        truncated=True,
        original_text_chars=len(text),
    )
