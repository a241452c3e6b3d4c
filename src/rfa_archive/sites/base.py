from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..models import ArticleRecord, EntryKind, Site, StoryDocument
from ..urls import UrlScope, logical_id_for_url, normalize_url

Link = tuple[str, EntryKind]


def _attr_text(val: object) -> str:
    if isinstance(val, list):
        if not val:
            return ""
        return str(val[0])
    return str(val or "")


def effective_base(soup: BeautifulSoup, page_url: str) -> str:
    base = soup.find("base")
    if base is not None:
        base_href = _attr_text(base.get("href")).strip()
        if base_href:
            return urljoin(page_url, base_href)
    return page_url


def anchor_urls(soup: BeautifulSoup, *, page_url: str) -> list[str]:
    base = effective_base(soup, page_url)
    out: list[str] = []
    for a in soup.select("a[href]"):
        href = _attr_text(a.get("href")).strip()
        if not href or href.startswith("#"):
            continue
        if href.lower().startswith(("mailto:", "javascript:", "tel:")):
            continue
        out.append(normalize_url(urljoin(base, href)))
    return out


def image_urls(node, *, page_url: str) -> list[str]:
    """``<img>`` sources under ``node``; lazy-load attributes win over src."""

    out: list[str] = []
    for img in node.find_all("img"):
        src = ""
        for attr in ("data-src", "data-original", "src"):
            src = _attr_text(img.get(attr)).strip()
            if src:
                break
        if not src or src.startswith("data:"):
            continue
        out.append(normalize_url(urljoin(page_url, src)))
    return out


def html_to_text(node) -> str:
    text = node.get_text("\n")
    lines = [ln.strip() for ln in text.splitlines()]
    out: list[str] = []
    blank_run = 0
    for ln in lines:
        if not ln:
            blank_run += 1
            if blank_run <= 1:
                out.append("")
            continue
        blank_run = 0
        out.append(ln)
    return "\n".join(out).strip() + "\n"


def dedupe_links(links: Iterable[Link]) -> list[Link]:
    seen: set[str] = set()
    out: list[Link] = []
    for url, kind in links:
        if url in seen:
            continue
        seen.add(url)
        out.append((url, kind))
    return out


class SiteAdapter(ABC):
    """Everything the crawler needs to know about one site's templates.

    The scheduler and fetcher never look inside pages; they only call these
    methods.
    """

    site: Site

    @property
    def scope(self) -> UrlScope:
        return UrlScope((self.site.domain,), path_prefix=self.site.path_prefix)

    @abstractmethod
    def list_seed_urls(self) -> list[str]:
        """Entry points, produced once when a crawl starts."""

    @abstractmethod
    def extract_links(
        self, body: bytes, *, page_url: str, kind: EntryKind
    ) -> list[Link]:
        """Further list pages, article pages and image URLs from a page."""

    @abstractmethod
    def extract_article(self, body: bytes, *, page_url: str) -> ArticleRecord:
        """Parse an article page; raises ParseError on template mismatch."""

    def extract_documents(
        self, body: bytes, *, page_url: str, kind: EntryKind
    ) -> list[StoryDocument]:
        """Documents a list page carries inline; most pages carry none."""
        return []

    def allows(self, url: str, kind: EntryKind) -> bool:
        if kind == EntryKind.IMAGE:
            return url.lower().startswith(("http://", "https://"))
        return self.scope.is_allowed(url)

    def logical_id(self, url: str, kind: EntryKind) -> str:
        return logical_id_for_url(url)
