"""Extraction service clients: Diffbot, Firecrawl and a local httpx + trafilatura fetcher."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

import httpx

from unbias_pipeline.extraction.cleaning import normalize_title, trim_at_sentinels
from unbias_pipeline.extraction.content import ExtractedContent, FetchStrategy, ImageRef
from unbias_pipeline.extraction.html_extractor import extract_article

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; UnbiasPipeline/0.1)"

Sleep = Callable[[float], Awaitable[None]]

_URL_AFTER_HOST = re.compile(r"\b(https?://[^/\s'\"?#]+)[^\s'\"]*")


class ExtractionServiceError(Exception):
    """Extraction failed for this attempt; the worker decides whether the job retries."""

    def __init__(self, message: str, *, service: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class ArticleExtractor(Protocol):
    name: str

    async def extract(self, url: str, *, fetch_strategy: FetchStrategy) -> ExtractedContent: ...


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    service: str,
    max_retries: int = 3,
    base_delay_seconds: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_retries`` times with doubling backoff."""

    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except Exception as error:  # noqa: BLE001
            last_error = error
            if attempt >= max_retries:
                break
            delay = base_delay_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s attempt %s/%s failed: %s; retrying in %.1fs",
                service,
                attempt,
                max_retries,
                describe_attempt_error(error),
                delay,
            )
            await sleep(delay)

    raise ExtractionServiceError(
        f"{service} API error after {max_retries} attempts: {describe_attempt_error(last_error)}",
        service=service,
        status_code=_status_code(last_error),
    ) from last_error


def describe_attempt_error(error: BaseException | None) -> str:
    """Loggable description of a failed call with credentials and article URLs removed.

    Status errors are reduced to code and reason; any other URL in the text is
    cut back to its scheme and host, which drops query-string API tokens.
    """

    if error is None:
        return "unknown error"
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return f"HTTP {response.status_code} {response.reason_phrase}".rstrip()
    return _URL_AFTER_HOST.sub(r"\1", str(error)) or type(error).__name__


def _status_code(error: Exception | None) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, ExtractionServiceError):
        return error.status_code
    return None


class DiffbotClient:
    """General-purpose article extraction through the Diffbot Article API."""

    name = "Diffbot"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        api_url: str = "https://api.diffbot.com/v3/article",
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("Diffbot API key is not configured.")
        self.client = client
        self.api_key = api_key
        self.api_url = api_url
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep

    async def extract(self, url: str, *, fetch_strategy: FetchStrategy) -> ExtractedContent:
        article = await call_with_retries(
            lambda: self._request(url),
            service=self.name,
            max_retries=self.max_retries,
            base_delay_seconds=self.retry_base_seconds,
            sleep=self._sleep,
        )
        images = [
            ImageRef(
                url=image.get("url"),
                primary=bool(image.get("primary")),
                caption=image.get("title"),
                width=image.get("naturalWidth") or image.get("width"),
                height=image.get("naturalHeight") or image.get("height"),
            )
            for image in article.get("images") or []
            if isinstance(image, dict)
        ]
        return ExtractedContent(
            title=article.get("title"),
            text=article.get("text"),
            html=article.get("html"),
            author=article.get("author"),
            date=article.get("date") or article.get("estimatedDate"),
            site_name=article.get("siteName"),
            canonical_url=article.get("pageUrl"),
            images=images,
            fetch_strategy=fetch_strategy,
            original_url=url,
            extra={
                key: article[key]
                for key in ("humanLanguage", "type", "tags", "publisherCountry", "sentiment")
                if key in article
            },
        )

    async def _request(self, url: str) -> dict[str, Any]:
        response = await self.client.get(self.api_url, params={"token": self.api_key, "url": url})
        response.raise_for_status()
        payload = response.json()
        if payload.get("error"):
            raise ExtractionServiceError(
                f"Diffbot error: {payload['error']}",
                service=self.name,
                status_code=payload.get("errorCode"),
            )
        objects = payload.get("objects") or []
        if not objects:
            raise ExtractionServiceError("Diffbot returned no article objects", service=self.name)
        return objects[0]


class FirecrawlClient:
    """Scraping service used for pre-resolved archive snapshots."""

    name = "Firecrawl"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        api_url: str = "https://api.firecrawl.dev/v1/scrape",
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("Firecrawl API key is not configured.")
        self.client = client
        self.api_key = api_key
        self.api_url = api_url
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep

    async def extract(self, url: str, *, fetch_strategy: FetchStrategy) -> ExtractedContent:
        data = await call_with_retries(
            lambda: self._request(url),
            service=self.name,
            max_retries=self.max_retries,
            base_delay_seconds=self.retry_base_seconds,
            sleep=self._sleep,
        )
        metadata = data.get("metadata") or {}
        html = data.get("html") or ""
        article = extract_article(html, url=url) if html else None
        text = article.text if article else (data.get("markdown") or "").strip()
        image_url = metadata.get("ogImage") or (article.image if article else None)
        return ExtractedContent(
            title=normalize_title(metadata.get("ogTitle") or metadata.get("title"))
            or (article.title if article else None),
            text=trim_at_sentinels(text) or None,
            html=html or None,
            author=metadata.get("author") or (article.author if article else None),
            date=metadata.get("publishedTime") or (article.date if article else None),
            site_name=metadata.get("ogSiteName") or (article.site_name if article else None),
            canonical_url=metadata.get("canonicalUrl") or metadata.get("ogUrl"),
            images=[ImageRef(url=image_url, primary=True)] if image_url else [],
            fetch_strategy=fetch_strategy,
            original_url=url,
            extra={
                key: metadata[key]
                for key in ("language", "keywords", "sourceURL", "statusCode")
                if key in metadata
            },
        )

    async def _request(self, url: str) -> dict[str, Any]:
        response = await self.client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"url": url, "formats": ["html", "markdown"], "onlyMainContent": False},
        )
        response.raise_for_status()
        payload = response.json()
        if not payload.get("success", True) or not payload.get("data"):
            raise ExtractionServiceError(
                f"Firecrawl scrape failed: {payload.get('error') or 'no data'}",
                service=self.name,
            )
        return payload["data"]


class LocalArticleFetcher:
    """Fetch the page directly and extract it with trafilatura."""

    name = "Local fetch"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep

    async def extract(self, url: str, *, fetch_strategy: FetchStrategy) -> ExtractedContent:
        return await call_with_retries(
            lambda: self._fetch(url, fetch_strategy),
            service=self.name,
            max_retries=self.max_retries,
            base_delay_seconds=self.retry_base_seconds,
            sleep=self._sleep,
        )

    async def _fetch(self, url: str, fetch_strategy: FetchStrategy) -> ExtractedContent:
        response = await self.client.get(url, follow_redirects=True)
        response.raise_for_status()
        html = response.text
        article = extract_article(html, url=str(response.url))
        if article is None:
            raise ExtractionServiceError(
                "No article content found in the fetched page",
                service=self.name,
            )
        return ExtractedContent(
            title=normalize_title(article.title),
            text=trim_at_sentinels(article.text),
            html=html,
            author=article.author,
            date=article.date,
            site_name=article.site_name,
            canonical_url=str(response.url),
            images=[ImageRef(url=article.image, primary=True)] if article.image else [],
            fetch_strategy=fetch_strategy,
            original_url=url,
            extra={"language": article.language} if article.language else {},
        )
