"""URL normalization and domain policy helpers."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Canonical form used for dedup lookups.

    Forces https, lowercases the host, drops a leading ``www.``, removes query
    and fragment and strips one trailing slash from non-root paths. Returns the
    input unchanged if it cannot be parsed.
    """

    if not url:
        return ""
    try:
        parsed = urlsplit(url.strip())
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        logger.warning("Cannot normalize URL %r; keeping original", url)
        return url
    if not parsed.scheme or not hostname:
        return url

    scheme = "https" if parsed.scheme.lower() == "http" else parsed.scheme.lower()
    host = hostname.lower()
    if host.startswith("www."):
        host = host[4:]
    if port is not None and not (scheme == "https" and port == 443):
        host = f"{host}:{port}"

    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urlunsplit((scheme, host, path, "", ""))


def extract_domain(url: str) -> str:
    """Return the lowercase hostname of ``url`` or raise ``ValueError``."""

    try:
        hostname = urlsplit(url).hostname
    except ValueError as error:
        raise ValueError(f"Invalid URL: {url}") from error
    if not hostname:
        raise ValueError(f"Invalid URL: {url}")
    return hostname.lower()


def strip_query_params(url: str) -> str:
    """Drop query string and fragment; archive lookups are sensitive to tracking params."""

    parsed = urlsplit(url)
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))


def is_domain_on_list(domain: str, domains: Iterable[str]) -> bool:
    """True when ``domain`` equals a listed domain or is a subdomain of one."""

    domain = domain.lower()
    return any(domain == item or domain.endswith(f".{item}") for item in domains)


def is_mirror_url(url: str, mirror_hosts: Iterable[str]) -> bool:
    try:
        domain = extract_domain(url)
    except ValueError:
        return False
    return is_domain_on_list(domain, mirror_hosts)
