import allure
import pytest

from unbias_pipeline.urls import (
    extract_domain,
    is_domain_on_list,
    is_mirror_url,
    normalize_url,
    strip_query_params,
)

pytestmark = [
    allure.epic("Submission"),
    allure.feature("URL Normalization"),
]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("http://www.Example.com/News/Story/?utm_source=x#top", "https://example.com/News/Story"),
        ("https://example.com/", "https://example.com/"),
        ("https://EXAMPLE.com", "https://example.com/"),
        ("https://example.com:8443/a/", "https://example.com:8443/a"),
        ("https://example.com:443/a", "https://example.com/a"),
    ],
)
def test_normalize_url(raw: str, expected: str) -> None:
    assert normalize_url(raw) == expected


def test_normalize_url_keeps_unparseable_input() -> None:
    assert normalize_url("not a url") == "not a url"
    assert normalize_url("") == ""


def test_extract_domain_lowercases_and_rejects_garbage() -> None:
    assert extract_domain("https://News.Example.COM/a") == "news.example.com"
    with pytest.raises(ValueError, match="Invalid URL"):
        extract_domain("no-scheme")


def test_strip_query_params_keeps_path() -> None:
    assert strip_query_params("https://nytimes.com/a/b.html?smid=tw#c") == "https://nytimes.com/a/b.html"


def test_domain_list_matches_subdomains_but_not_suffixes() -> None:
    domains = ("nytimes.com", "ft.com")
    assert is_domain_on_list("nytimes.com", domains)
    assert is_domain_on_list("cooking.nytimes.com", domains)
    assert not is_domain_on_list("notnytimes.com", domains)
    assert not is_domain_on_list("ft.com.evil.org", domains)


def test_mirror_url_checks_host_only() -> None:
    mirrors = ("archive.ph", "archive.today")
    assert is_mirror_url("https://archive.ph/AbC12", mirrors)
    assert not is_mirror_url("https://example.com/archive.ph/AbC12", mirrors)
    assert not is_mirror_url("garbage", mirrors)
