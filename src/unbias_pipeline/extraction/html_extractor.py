"""HTML to article text and metadata using trafilatura."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import trafilatura

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HtmlArticle:
    """Article body and metadata recovered from raw HTML."""

    text: str
    title: str | None = None
    author: str | None = None
    date: str | None = None
    site_name: str | None = None
    image: str | None = None
    language: str | None = None


def extract_article(html: str, *, url: str | None = None) -> HtmlArticle | None:
    """Extract main content from HTML.

    Tries a precision-oriented pass first and a recall-oriented pass when that
    yields nothing. Returns ``None`` when neither finds article text.
    """

    if not html or not html.strip():
        return None

    payload = _extract_json(html, url=url, favor_precision=True)
    if payload is None or not payload.get("text"):
        payload = _extract_json(html, url=url, favor_precision=False)
    if payload is None or not str(payload.get("text") or "").strip():
        return None

    return HtmlArticle(
        text=str(payload["text"]).strip(),
        title=payload.get("title") or None,
        author=payload.get("author") or None,
        date=payload.get("date") or None,
        site_name=payload.get("source-hostname") or payload.get("hostname") or None,
        image=payload.get("image") or None,
        language=payload.get("language") or None,
    )


def _extract_json(html: str, *, url: str | None, favor_precision: bool) -> dict | None:
    try:
        raw = trafilatura.extract(
            html,
            url=url,
            output_format="json",
            with_metadata=True,
            include_tables=True,
            include_links=False,
            include_comments=False,
            favor_precision=favor_precision,
            favor_recall=not favor_precision,
            deduplicate=True,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura.extract failed for %s: %s", url or "<unknown>", exc)
        return None
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("trafilatura returned invalid JSON for %s", url or "<unknown>")
        return None
    return payload if isinstance(payload, dict) else None
