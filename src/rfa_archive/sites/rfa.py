"""Adapters for the Radio Free Asia language editions.

All editions run on the same Arc publishing stack, so the shared parsing
lives in ``ArcSiteAdapter``. List pages come from the story-feed API, one
calendar month per query; article pages are the public HTML. Subclasses
only carry the per-edition template differences (legacy Plone article
bodies survive on some editions' older archives).
"""

from __future__ import annotations

import calendar
import datetime as dt
import json
import re
from typing import Any, ClassVar, Final
from urllib.parse import parse_qs, quote, urlparse

from bs4 import BeautifulSoup

from ..errors import ParseError
from ..models import BASE_DOMAIN, ArticleRecord, EntryKind, Site, StoryDocument
from ..urls import absolutize, logical_id_for_url, normalize_url
from .base import (
    Link,
    SiteAdapter,
    anchor_urls,
    dedupe_links,
    html_to_text,
    image_urls,
)

FEED_PATH: Final[str] = "/pf/api/v3/content/fetch/story-feed-query"
FEED_PAGE_SIZE: Final[int] = 100
FIRST_MONTH: Final[tuple[int, int]] = (1998, 1)
STORY_NAMESPACE: Final[str] = "story"

_FEED_FILTER = (
    "{content_elements{_id,credits{by{additional_properties{original{byline}},"
    "name,type,url}},description{basic},display_date,headlines{basic},"
    "label{basic{display,text,url}},owner{sponsored},promo_items{basic{_id,"
    "auth{1},type,url,caption},lead_art{promo_items{basic{_id,auth{1},type,"
    "url}}},type},type,websites{%s{website_section{_id,name},website_url}},"
    "content_elements{type,content,url,caption{basic}}},count,next}"
)

_ARTICLE_PATH_RE = re.compile(
    r"(/\d{4}/\d{2}/\d{2}/)|(\.html?$)|(-\d{8,}/?$)", re.IGNORECASE
)
_STRIP_TAGS = ("script", "style", "noscript", "iframe", "form")


def month_windows(
    start: tuple[int, int], end: tuple[int, int]
) -> list[tuple[dt.date, dt.date]]:
    """Inclusive (first day, last day) pairs for every month in range."""

    out: list[tuple[dt.date, dt.date]] = []
    year, month = start
    while (year, month) <= end:
        last_day = calendar.monthrange(year, month)[1]
        out.append((dt.date(year, month, 1), dt.date(year, month, last_day)))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return out


def feed_url(website: str, begin: dt.date, end: dt.date, offset: int = 0) -> str:
    query = json.dumps(
        {
            "feature": "results-list",
            "offset": offset,
            "query": f"display_date:[{begin.isoformat()} TO {end.isoformat()}]",
            "size": FEED_PAGE_SIZE,
        },
        separators=(",", ":"),
    )
    params = [
        ("query", quote(query, safe="")),
        ("filter", quote(_FEED_FILTER % website, safe="")),
        ("d", "147"),
        ("mxId", "00000000"),
        ("_website", website),
    ]
    qs = "&".join(f"{k}={v}" for k, v in params)
    return f"https://{BASE_DOMAIN}{FEED_PATH}?{qs}"


def parse_feed_query(url: str) -> dict[str, Any]:
    params = parse_qs(urlparse(url).query)
    raw = (params.get("query") or ["{}"])[0]
    try:
        return json.loads(raw)
    except ValueError:
        return {}


def _feed_window(query: dict[str, Any]) -> tuple[dt.date, dt.date] | None:
    m = re.match(
        r"display_date:\[(\d{4}-\d{2}-\d{2}) TO (\d{4}-\d{2}-\d{2})\]",
        str(query.get("query") or ""),
    )
    if not m:
        return None
    return dt.date.fromisoformat(m.group(1)), dt.date.fromisoformat(m.group(2))


def is_feed_url(url: str) -> bool:
    parsed = urlparse(url)
    return (parsed.hostname or "").lower() == BASE_DOMAIN and parsed.path == FEED_PATH


class ArcSiteAdapter(SiteAdapter):
    site: ClassVar[Site]

    title_selectors: ClassVar[tuple[str, ...]] = (
        "h1",
        "meta[property='og:title']",
        "title",
    )
    body_selectors: ClassVar[tuple[str, ...]] = (
        "article .b-article-body",
        ".b-article-body",
        "article .c-article-body",
        "div#storytext",
        "article",
        "main",
    )
    date_selectors: ClassVar[tuple[str, ...]] = (
        "meta[property='article:published_time']",
        "meta[name='article:published_time']",
        "time[datetime]",
    )

    def __init__(
        self,
        *,
        start_month: tuple[int, int] = FIRST_MONTH,
        end_month: tuple[int, int] | None = None,
    ) -> None:
        if end_month is None:
            today = dt.date.today()
            end_month = (today.year, today.month)
        self.start_month = start_month
        self.end_month = end_month

    def list_seed_urls(self) -> list[str]:
        return [
            feed_url(self.site.feed_website, begin, end)
            for begin, end in month_windows(self.start_month, self.end_month)
        ]

    def allows(self, url: str, kind: EntryKind) -> bool:
        if kind == EntryKind.LIST and is_feed_url(url):
            return True
        return super().allows(url, kind)

    def logical_id(self, url: str, kind: EntryKind) -> str:
        if kind == EntryKind.LIST and is_feed_url(url):
            query = parse_feed_query(url)
            window = _feed_window(query)
            if window is not None:
                return f"feed/{window[0]:%Y-%m}/{int(query.get('offset') or 0)}"
        return logical_id_for_url(url)

    # List pages.

    def _article_url(self, item: dict[str, Any]) -> str | None:
        websites = item.get("websites") or {}
        entry = websites.get(self.site.feed_website) or {}
        website_url = entry.get("website_url")
        if not isinstance(website_url, str) or not website_url.strip("/"):
            return None
        return absolutize(website_url)

    def _feed_images(self, item: dict[str, Any]) -> list[str]:
        out: list[str] = []
        promo = ((item.get("promo_items") or {}).get("basic") or {}).get("url")
        if isinstance(promo, str) and promo:
            out.append(absolutize(promo))
        for element in item.get("content_elements") or []:
            if not isinstance(element, dict) or element.get("type") != "image":
                continue
            src = element.get("url") or element.get("content")
            if isinstance(src, str) and src:
                out.append(absolutize(src))
        return out

    @staticmethod
    def _load_feed(
        body: bytes, *, page_url: str
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseError(page_url, f"feed is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ParseError(page_url, "feed is not a JSON object")
        items = [i for i in data.get("content_elements") or [] if isinstance(i, dict)]
        return data, items

    def _feed_links(self, body: bytes, *, page_url: str) -> list[Link]:
        data, items = self._load_feed(body, page_url=page_url)
        links: list[Link] = []
        for item in items:
            article = self._article_url(item)
            if article is not None:
                links.append((article, EntryKind.ARTICLE))
            links.extend((img, EntryKind.IMAGE) for img in self._feed_images(item))

        query = parse_feed_query(page_url)
        window = _feed_window(query)
        try:
            count = int(data.get("count") or 0)
        except (TypeError, ValueError):
            count = 0
        offset = int(query.get("offset") or 0)
        if window is not None and items and count > offset + len(items):
            next_url = feed_url(
                self.site.feed_website, window[0], window[1], offset + len(items)
            )
            links.append((next_url, EntryKind.LIST))

        return dedupe_links(links)

    def extract_documents(
        self, body: bytes, *, page_url: str, kind: EntryKind
    ) -> list[StoryDocument]:
        if kind != EntryKind.LIST or not is_feed_url(page_url):
            return []
        _, items = self._load_feed(body, page_url=page_url)
        docs: list[StoryDocument] = []
        for item in items:
            article = self._article_url(item)
            if article is None:
                continue
            headline = (item.get("headlines") or {}).get("basic")
            display_date = item.get("display_date")
            docs.append(
                StoryDocument(
                    logical_id=f"{STORY_NAMESPACE}/{logical_id_for_url(article)}",
                    article_url=article,
                    document=item,
                    title=headline if isinstance(headline, str) and headline else None,
                    display_date=display_date if isinstance(display_date, str) else None,
                )
            )
        return docs

    def _is_article_path(self, url: str) -> bool:
        return bool(_ARTICLE_PATH_RE.search(urlparse(url).path))

    def _html_links(self, soup: BeautifulSoup, *, page_url: str) -> list[Link]:
        links: list[Link] = []
        for url in anchor_urls(soup, page_url=page_url):
            if not self.scope.is_allowed(url):
                continue
            kind = EntryKind.ARTICLE if self._is_article_path(url) else EntryKind.LIST
            links.append((url, kind))
        return links

    def extract_links(
        self, body: bytes, *, page_url: str, kind: EntryKind
    ) -> list[Link]:
        if kind == EntryKind.IMAGE:
            return []
        if kind == EntryKind.LIST and is_feed_url(page_url):
            return self._feed_links(body, page_url=page_url)

        soup = BeautifulSoup(body, "html.parser")
        links = self._html_links(soup, page_url=page_url)
        if kind == EntryKind.ARTICLE:
            # Navigation menus link to section pages; from an article only
            # other articles are worth following.
            links = [(u, k) for u, k in links if k == EntryKind.ARTICLE]
            node = self._body_node(soup)
            if node is not None:
                links.extend(
                    (u, EntryKind.IMAGE) for u in image_urls(node, page_url=page_url)
                )
            og_image = self._meta_content(soup, "meta[property='og:image']")
            if og_image:
                links.append((absolutize(og_image, base=page_url), EntryKind.IMAGE))
        else:
            links.extend(
                (u, EntryKind.IMAGE) for u in image_urls(soup, page_url=page_url)
            )
        return dedupe_links(links)

    # Article pages.

    @staticmethod
    def _meta_content(soup: BeautifulSoup, selector: str) -> str | None:
        node = soup.select_one(selector)
        if node is None:
            return None
        value = node.get("content") or node.get("datetime")
        if isinstance(value, list):
            value = value[0] if value else None
        return str(value).strip() if value else None

    def _title(self, soup: BeautifulSoup) -> str | None:
        for selector in self.title_selectors:
            node = soup.select_one(selector)
            if node is None:
                continue
            if node.name == "meta":
                text = self._meta_content(soup, selector) or ""
            else:
                text = node.get_text(" ", strip=True)
            if text:
                return text
        return None

    def _body_node(self, soup: BeautifulSoup):
        for selector in self.body_selectors:
            node = soup.select_one(selector)
            if node is not None and node.get_text(strip=True):
                return node
        return None

    def _display_date(self, soup: BeautifulSoup) -> str | None:
        for selector in self.date_selectors:
            value = self._meta_content(soup, selector)
            if value:
                return value
        return None

    def _canonical_id(self, soup: BeautifulSoup, *, page_url: str) -> str:
        link = soup.select_one("link[rel='canonical'][href]")
        if link is not None:
            href = str(link.get("href") or "").strip()
            canonical = normalize_url(absolutize(href, base=page_url)) if href else ""
            if canonical and self.scope.is_allowed(canonical):
                return logical_id_for_url(canonical)
        return logical_id_for_url(page_url)

    def extract_article(self, body: bytes, *, page_url: str) -> ArticleRecord:
        soup = BeautifulSoup(body, "html.parser")
        title = self._title(soup)
        if not title:
            raise ParseError(page_url, "no headline")

        node = self._body_node(soup)
        if node is None:
            raise ParseError(page_url, "no article body")

        images = image_urls(node, page_url=page_url)
        og_image = self._meta_content(soup, "meta[property='og:image']")
        if og_image:
            images.append(absolutize(og_image, base=page_url))

        for tag in node.find_all(list(_STRIP_TAGS)):
            tag.decompose()

        return ArticleRecord(
            title=title,
            body_html=str(node),
            text=html_to_text(node),
            canonical_id=self._canonical_id(soup, page_url=page_url),
            source_url=page_url,
            image_urls=list(dict.fromkeys(images)),
            display_date=self._display_date(soup),
        )


class EnglishAdapter(ArcSiteAdapter):
    site = Site.ENGLISH


class MandarinAdapter(ArcSiteAdapter):
    site = Site.MANDARIN


class CantoneseAdapter(ArcSiteAdapter):
    site = Site.CANTONESE


class BurmeseAdapter(ArcSiteAdapter):
    site = Site.BURMESE
    body_selectors = ("div#storytext",) + ArcSiteAdapter.body_selectors


class KoreanAdapter(ArcSiteAdapter):
    site = Site.KOREAN


class LaoAdapter(ArcSiteAdapter):
    site = Site.LAO
    body_selectors = ("div#storytext",) + ArcSiteAdapter.body_selectors


class KhmerAdapter(ArcSiteAdapter):
    site = Site.KHMER
    body_selectors = ("div#storytext",) + ArcSiteAdapter.body_selectors


class TibetanAdapter(ArcSiteAdapter):
    site = Site.TIBETAN
    title_selectors = ("meta[property='og:title']", "h1", "title")


class UyghurAdapter(ArcSiteAdapter):
    site = Site.UYGHUR
    title_selectors = ("meta[property='og:title']", "h1", "title")
    body_selectors = ("div#storytext",) + ArcSiteAdapter.body_selectors


class VietnameseAdapter(ArcSiteAdapter):
    site = Site.VIETNAMESE
