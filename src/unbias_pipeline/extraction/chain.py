"""Content extraction chain: plan, optionally resolve a snapshot, extract, post-process."""

from __future__ import annotations

import logging

import httpx

from unbias_pipeline.config import Settings
from unbias_pipeline.extraction.archive_resolver import ArchiveResolver
from unbias_pipeline.extraction.content import ExtractedContent, rewrite_archive_images
from unbias_pipeline.extraction.services import (
    DEFAULT_USER_AGENT,
    ArticleExtractor,
    DiffbotClient,
    FirecrawlClient,
    LocalArticleFetcher,
)
from unbias_pipeline.extraction.strategy import (
    ExtractionPlan,
    ExtractionService,
    general_service,
    select_strategy,
)

logger = logging.getLogger(__name__)


class ContentExtractionChain:
    """Produce ``ExtractedContent`` for a URL following ``select_strategy``."""

    def __init__(
        self,
        *,
        local: ArticleExtractor,
        diffbot: ArticleExtractor | None = None,
        firecrawl: ArticleExtractor | None = None,
        resolver: ArchiveResolver | None = None,
        proactive_domains: tuple[str, ...] = (),
        mirror_hosts: tuple[str, ...] = (),
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.local = local
        self.diffbot = diffbot
        self.firecrawl = firecrawl
        self.resolver = resolver
        self.proactive_domains = proactive_domains
        self.mirror_hosts = mirror_hosts
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> ContentExtractionChain:
        extraction = settings.extraction
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(extraction.request_timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
        )
        retry_policy = {
            "max_retries": extraction.max_retries,
            "retry_base_seconds": extraction.retry_base_seconds,
        }
        diffbot = (
            DiffbotClient(
                client,
                api_key=extraction.diffbot_api_key,
                api_url=extraction.diffbot_api_url,
                **retry_policy,
            )
            if extraction.diffbot_api_key
            else None
        )
        firecrawl = (
            FirecrawlClient(
                client,
                api_key=extraction.firecrawl_api_key,
                api_url=extraction.firecrawl_api_url,
                **retry_policy,
            )
            if extraction.firecrawl_api_key
            else None
        )
        return cls(
            local=LocalArticleFetcher(client, **retry_policy),
            diffbot=diffbot,
            firecrawl=firecrawl,
            resolver=ArchiveResolver.from_settings(settings.archive),
            proactive_domains=extraction.proactive_archive_domains,
            mirror_hosts=settings.archive.mirrors,
            http_client=client,
        )

    async def aclose(self) -> None:
        if self.resolver is not None:
            await self.resolver.aclose()
        if self._http_client is not None:
            await self._http_client.aclose()

    def plan(self, url: str) -> ExtractionPlan:
        return select_strategy(
            url,
            proactive_domains=self.proactive_domains,
            mirror_hosts=self.mirror_hosts,
            snapshot_service_configured=self.firecrawl is not None,
            general=general_service(
                diffbot_configured=self.diffbot is not None,
                firecrawl_configured=self.firecrawl is not None,
            ),
        )

    async def extract(self, url: str) -> ExtractedContent:
        plan = self.plan(url)
        logger.info(
            "Extraction plan for %s: %s via %s (%s)",
            url,
            plan.url,
            plan.service.value,
            plan.reason,
        )

        if plan.resolve_archive:
            snapshot = await self.resolver.resolve(plan.url) if self.resolver is not None else None
            if snapshot is not None:
                plan = plan.with_snapshot(snapshot)
                logger.info("Using archive snapshot %s for %s", snapshot, url)
            else:
                logger.info(
                    "No archive snapshot for %s; falling back to %s with stripped URL",
                    url,
                    plan.service.value,
                )

        extractor = self._extractor(plan.service)
        content = await extractor.extract(plan.url, fetch_strategy=plan.fetch_strategy)
        content.images = rewrite_archive_images(content.images, self.mirror_hosts)
        content.original_url = url
        content.extra.setdefault("fetchedUrl", plan.url)
        return content

    def _extractor(self, service: ExtractionService) -> ArticleExtractor:
        if service is ExtractionService.DIFFBOT and self.diffbot is not None:
            return self.diffbot
        if service is ExtractionService.FIRECRAWL and self.firecrawl is not None:
            return self.firecrawl
        return self.local
