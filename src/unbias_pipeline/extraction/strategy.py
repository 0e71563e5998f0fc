"""Pure decision table choosing how a URL gets extracted."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum

from unbias_pipeline.extraction.content import FetchStrategy
from unbias_pipeline.urls import extract_domain, is_domain_on_list, is_mirror_url, strip_query_params


class ExtractionService(str, Enum):
    DIFFBOT = "diffbot"
    FIRECRAWL = "firecrawl"
    LOCAL = "local"


@dataclass(frozen=True, slots=True)
class ExtractionPlan:
    """Which service extracts which URL.

    ``resolve_archive`` asks the chain to look up a snapshot first; on success
    ``with_snapshot`` swaps in the snapshot service and mirror URL.
    """

    service: ExtractionService
    url: str
    fetch_strategy: FetchStrategy
    resolve_archive: bool = False
    reason: str = ""

    def with_snapshot(self, snapshot_url: str) -> ExtractionPlan:
        return replace(
            self,
            service=ExtractionService.FIRECRAWL,
            url=snapshot_url,
            fetch_strategy=FetchStrategy.ARCHIVE_MIRROR,
            resolve_archive=False,
            reason="archive snapshot resolved",
        )


def general_service(*, diffbot_configured: bool, firecrawl_configured: bool) -> ExtractionService:
    if diffbot_configured:
        return ExtractionService.DIFFBOT
    if firecrawl_configured:
        return ExtractionService.FIRECRAWL
    return ExtractionService.LOCAL


def select_strategy(
    url: str,
    *,
    proactive_domains: Iterable[str],
    mirror_hosts: Iterable[str],
    snapshot_service_configured: bool,
    general: ExtractionService,
) -> ExtractionPlan:
    """Decide service, target URL and provenance for ``url``.

    | url shape      | on allow-list | snapshot service | plan                                  |
    |----------------|---------------|------------------|---------------------------------------|
    | mirror-hosted  | any           | yes              | snapshot service, url unchanged       |
    | mirror-hosted  | any           | no               | general service, url unchanged        |
    | regular        | yes           | yes              | resolve stripped url, then decide     |
    | regular        | yes           | no               | general service, stripped url         |
    | regular        | no            | any              | general service, url unchanged        |
    """

    general_strategy = (
        FetchStrategy.FIRECRAWL if general is ExtractionService.FIRECRAWL else FetchStrategy.DIRECT
    )

    if is_mirror_url(url, mirror_hosts):
        if snapshot_service_configured:
            return ExtractionPlan(
                service=ExtractionService.FIRECRAWL,
                url=url,
                fetch_strategy=FetchStrategy.ARCHIVE_MIRROR,
                reason="mirror snapshot url",
            )
        return ExtractionPlan(
            service=general,
            url=url,
            fetch_strategy=general_strategy,
            reason="mirror snapshot url without snapshot service",
        )

    try:
        domain = extract_domain(url)
    except ValueError:
        domain = ""

    if domain and is_domain_on_list(domain, proactive_domains):
        return ExtractionPlan(
            service=general,
            url=strip_query_params(url),
            fetch_strategy=general_strategy,
            resolve_archive=snapshot_service_configured,
            reason=f"{domain} is on the proactive archive list",
        )

    return ExtractionPlan(
        service=general,
        url=url,
        fetch_strategy=general_strategy,
        reason="regular url",
    )
