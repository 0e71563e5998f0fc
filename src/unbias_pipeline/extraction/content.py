"""Normalized extraction output shared by every extraction service."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from unbias_pipeline.urls import is_mirror_url


class FetchStrategy(str, Enum):
    """Provenance of extracted content, disclosed to clients."""

    DIRECT = "direct"
    ARCHIVE_MIRROR = "archive_mirror"
    FIRECRAWL = "firecrawl"


@dataclass(slots=True)
class ImageRef:
    url: str | None
    primary: bool = False
    caption: str | None = None
    width: int | None = None
    height: int | None = None
    is_archive_image: bool = False
    original_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "primary": self.primary,
            "caption": self.caption,
            "width": self.width,
            "height": self.height,
            "isArchiveImage": self.is_archive_image,
            "originalUrl": self.original_url,
        }


@dataclass(slots=True)
class ExtractedContent:
    """Ephemeral extraction result; only selected fields are persisted."""

    title: str | None
    text: str | None
    fetch_strategy: FetchStrategy
    original_url: str
    html: str | None = None
    author: str | None = None
    date: str | None = None
    site_name: str | None = None
    canonical_url: str | None = None
    images: list[ImageRef] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_archive_content(self) -> bool:
        return self.fetch_strategy is FetchStrategy.ARCHIVE_MIRROR


def rewrite_archive_images(images: Iterable[ImageRef], mirror_hosts: Iterable[str]) -> list[ImageRef]:
    """Null out mirror-hosted image URLs; they expire and must not be persisted."""

    hosts = tuple(mirror_hosts)
    rewritten: list[ImageRef] = []
    for image in images:
        if image.url and is_mirror_url(image.url, hosts):
            rewritten.append(
                replace(image, url=None, is_archive_image=True, original_url=image.url),
            )
        else:
            rewritten.append(image)
    return rewritten


def select_preview_image(images: Iterable[ImageRef]) -> str | None:
    """Primary image first, then the first image with a usable URL."""

    usable = [image for image in images if image.url]
    for image in usable:
        if image.primary:
            return image.url
    return usable[0].url if usable else None


def create_minimal_metadata(content: ExtractedContent) -> dict[str, Any]:
    """Provenance fields without the bulky html, text and images."""

    metadata: dict[str, Any] = {
        key: value
        for key, value in content.extra.items()
        if key not in {"html", "text", "images"}
    }
    metadata.update(
        {
            "title": content.title,
            "author": content.author,
            "date": content.date,
            "siteName": content.site_name,
            "canonicalUrl": content.canonical_url,
            "originalUrl": content.original_url,
            "fetchStrategy": content.fetch_strategy.value,
            "isArchiveContent": content.is_archive_content,
            "imageCount": len(content.images),
        },
    )
    return metadata
