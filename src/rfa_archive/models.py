"""Data models shared by the fetcher, adapters, scheduler and index."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .content import MediaKind

BASE_DOMAIN = "www.rfa.org"


class Site(str, Enum):
    """The closed set of language editions this archive knows about.

    Member order fixes the one-byte site code (`code`) stored with every
    index record.
    """

    ENGLISH = "english"
    MANDARIN = "mandarin"
    CANTONESE = "cantonese"
    BURMESE = "burmese"
    KOREAN = "korean"
    LAO = "lao"
    KHMER = "khmer"
    TIBETAN = "tibetan"
    UYGHUR = "uyghur"
    VIETNAMESE = "vietnamese"

    @property
    def code(self) -> int:
        return list(Site).index(self)

    @property
    def domain(self) -> str:
        return BASE_DOMAIN

    @property
    def path_prefix(self) -> str:
        return self.value

    @property
    def feed_website(self) -> str:
        """Website id the Arc story-feed API expects for this edition."""
        if self is Site.ENGLISH:
            return "radio-free-asia"
        return f"rfa-{self.value}"

    @classmethod
    def parse(cls, name: str) -> "Site":
        key = name.strip().lower()
        for site in cls:
            if key in {site.value, site.feed_website, site.name.lower()}:
                return site
        choices = ", ".join(s.value for s in cls)
        raise ValueError(f"Unknown website: {name!r}; available: {choices}")


class EntryKind(str, Enum):
    LIST = "list"
    ARTICLE = "article"
    IMAGE = "image"

    @property
    def media_kind(self) -> MediaKind:
        if self is EntryKind.IMAGE:
            return MediaKind.IMAGE
        return MediaKind.PAGE


@dataclass(frozen=True)
class FrontierEntry:
    site: Site
    url: str
    kind: EntryKind
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "site": self.site.value,
            "url": self.url,
            "kind": self.kind.value,
            "depth": self.depth,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FrontierEntry":
        return cls(
            site=Site(data["site"]),
            url=str(data["url"]),
            kind=EntryKind(data["kind"]),
            depth=int(data.get("depth") or 0),
        )


@dataclass
class ArticleRecord:
    """One parsed article, ready to be stored."""

    title: str
    body_html: str
    text: str
    canonical_id: str
    source_url: str
    image_urls: list[str] = field(default_factory=list)
    display_date: str | None = None

    def to_document(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StoryDocument:
    """A story item as the feed API serves it, kept verbatim under the
    `story/` namespace next to the parsed HTML article."""

    logical_id: str
    article_url: str
    document: dict[str, Any]
    title: str | None = None
    display_date: str | None = None


@dataclass(frozen=True)
class ArchiveRecord:
    site: Site
    logical_id: str
    content_hash: str
    media_kind: MediaKind
    source_url: str
    fetched_at: str
    first_seen_at: str
    title: str | None = None
    display_date: str | None = None
