import allure
import pytest

from unbias_pipeline.config import ARCHIVE_MIRROR_HOSTS
from unbias_pipeline.extraction.content import FetchStrategy
from unbias_pipeline.extraction.strategy import (
    ExtractionService,
    general_service,
    select_strategy,
)

pytestmark = [
    allure.epic("Content Extraction"),
    allure.feature("Strategy Selection"),
]

PROACTIVE = ("nytimes.com", "spiegel.de")


def _plan(url: str, *, snapshot: bool, general: ExtractionService = ExtractionService.DIFFBOT):
    return select_strategy(
        url,
        proactive_domains=PROACTIVE,
        mirror_hosts=ARCHIVE_MIRROR_HOSTS,
        snapshot_service_configured=snapshot,
        general=general,
    )


def test_mirror_url_goes_to_snapshot_service_unchanged() -> None:
    plan = _plan("https://archive.ph/AbC12?x=1", snapshot=True)

    assert plan.service is ExtractionService.FIRECRAWL
    assert plan.url == "https://archive.ph/AbC12?x=1"
    assert plan.fetch_strategy is FetchStrategy.ARCHIVE_MIRROR
    assert plan.resolve_archive is False


def test_mirror_url_without_snapshot_service_uses_general_service() -> None:
    plan = _plan("https://archive.ph/AbC12", snapshot=False)

    assert plan.service is ExtractionService.DIFFBOT
    assert plan.fetch_strategy is FetchStrategy.DIRECT


def test_allow_listed_domain_resolves_stripped_url() -> None:
    plan = _plan("https://www.nytimes.com/2026/story.html?smid=tw", snapshot=True)

    assert plan.resolve_archive is True
    assert plan.url == "https://www.nytimes.com/2026/story.html"
    assert plan.service is ExtractionService.DIFFBOT

    resolved = plan.with_snapshot("https://archive.ph/Qw12e")
    assert resolved.service is ExtractionService.FIRECRAWL
    assert resolved.url == "https://archive.ph/Qw12e"
    assert resolved.fetch_strategy is FetchStrategy.ARCHIVE_MIRROR
    assert resolved.resolve_archive is False


def test_allow_listed_domain_without_snapshot_service_strips_query() -> None:
    plan = _plan("https://spiegel.de/a?b=c", snapshot=False)

    assert plan.resolve_archive is False
    assert plan.url == "https://spiegel.de/a"
    assert plan.service is ExtractionService.DIFFBOT


def test_regular_url_is_left_alone() -> None:
    plan = _plan("https://example.com/a?b=c", snapshot=True)

    assert plan.url == "https://example.com/a?b=c"
    assert plan.resolve_archive is False
    assert plan.fetch_strategy is FetchStrategy.DIRECT


def test_firecrawl_as_general_service_reports_its_provenance() -> None:
    plan = _plan("https://example.com/a", snapshot=True, general=ExtractionService.FIRECRAWL)

    assert plan.fetch_strategy is FetchStrategy.FIRECRAWL


@pytest.mark.parametrize(
    ("diffbot", "firecrawl", "expected"),
    [
        (True, True, ExtractionService.DIFFBOT),
        (False, True, ExtractionService.FIRECRAWL),
        (False, False, ExtractionService.LOCAL),
    ],
)
def test_general_service_preference(diffbot: bool, firecrawl: bool, expected: ExtractionService) -> None:
    assert general_service(diffbot_configured=diffbot, firecrawl_configured=firecrawl) is expected
