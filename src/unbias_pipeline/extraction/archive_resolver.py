"""Find an existing archive snapshot for a URL without hitting challenge pages."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

import httpx
from bs4 import BeautifulSoup

from unbias_pipeline.config import ARCHIVE_MIRROR_HOSTS, ArchiveSettings
from unbias_pipeline.urls import is_mirror_url

logger = logging.getLogger(__name__)

SHORT_CODE_RE = re.compile(r"^(?:https?://[^/]+)?/([A-Za-z0-9]{4,6})(?:/|$)")
_META_REFRESH_URL_RE = re.compile(r"url\s*=\s*['\"]?([^'\"]+)", re.I)

# Mirror routes that look like short codes but lead to listings or bot challenges.
_RESERVED_PATHS = frozenset({"newest", "oldest", "search", "submit", "timegate", "timemap", "faq"})

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122 Safari/537.36"
    ),
    "Accept-Language": "en,de;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


class ArchiveResolver:
    """Probe mirrors in order and return the first short-code snapshot URL."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        mirrors: tuple[str, ...] = ARCHIVE_MIRROR_HOSTS,
        delay_seconds: float = 0.15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.mirrors = mirrors
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: ArchiveSettings) -> ArchiveResolver:
        client = httpx.AsyncClient(
            headers=BROWSER_HEADERS,
            timeout=settings.request_timeout_seconds,
            proxy=settings.proxy_url,
        )
        return cls(client, mirrors=settings.mirrors, delay_seconds=settings.mirror_delay_seconds)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def resolve(self, original_url: str) -> str | None:
        """Snapshot URL, or ``None`` when no mirror has one."""

        for index, host in enumerate(self.mirrors):
            if index > 0:
                await self._sleep(self.delay_seconds)
            try:
                resolved = await self._lookup(host, original_url)
            except (httpx.HTTPError, httpx.InvalidURL) as error:
                logger.debug("Archive mirror %s failed for %s: %s", host, original_url, error)
                continue
            if resolved is not None:
                return resolved
            logger.debug("No short code found on %s for %s", host, original_url)

        logger.warning("No archive snapshot found for %s", original_url)
        return None

    async def _lookup(self, host: str, original_url: str) -> str | None:
        listing_url = f"https://{host}/{original_url}"

        first = await self.client.get(listing_url, follow_redirects=False)
        location = first.headers.get("location", "")
        if first.is_redirect and self._is_snapshot_href(host, location):
            resolved = _absolute(host, location)
            logger.info("Archive snapshot resolved via redirect: %s", resolved)
            return resolved

        listing = await self.client.get(listing_url, follow_redirects=True)
        if listing.status_code != 200:
            logger.debug("HTTP %s from %s", listing.status_code, host)
            return None

        soup = BeautifulSoup(listing.text, "html.parser")
        for anchor in soup.find_all("a", href=True):
            href = str(anchor["href"]).strip()
            if self._is_snapshot_href(host, href):
                resolved = _absolute(host, href)
                logger.info("Archive snapshot resolved via listing: %s", resolved)
                return resolved

        meta = soup.find("meta", attrs={"http-equiv": re.compile(r"^refresh$", re.I)})
        if meta is not None:
            match = _META_REFRESH_URL_RE.search(str(meta.get("content", "")))
            if match and self._is_snapshot_href(host, match.group(1).strip()):
                resolved = _absolute(host, match.group(1).strip())
                logger.info("Archive snapshot resolved via meta refresh: %s", resolved)
                return resolved
        return None

    def _is_snapshot_href(self, host: str, href: str) -> bool:
        match = SHORT_CODE_RE.match(href)
        if match is None or match.group(1).lower() in _RESERVED_PATHS:
            return False
        if href.lower().startswith(("http://", "https://")):
            return is_mirror_url(href, (host, *self.mirrors))
        return True


def _absolute(host: str, href: str) -> str:
    if href.lower().startswith(("http://", "https://")):
        return href
    return f"https://{host}{'' if href.startswith('/') else '/'}{href}"
