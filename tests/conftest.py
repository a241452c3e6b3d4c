from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from rfa_archive.config import SiteLimits
from rfa_archive.crawl import SiteCrawler
from rfa_archive.errors import ParseError
from rfa_archive.http_client import HttpClient
from rfa_archive.index import ArchiveIndex
from rfa_archive.manifest import ManifestWriter
from rfa_archive.models import ArticleRecord, EntryKind, Site
from rfa_archive.sites.base import SiteAdapter
from rfa_archive.state import CrawlState
from rfa_archive.store import ContentStore
from rfa_archive.urls import logical_id_for_url

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 32


@dataclass
class FakeResponse:
    status_code: int = 200
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""


class FakeSession:
    """Stands in for requests.Session; routes are url -> response(s).

    A list of responses is consumed one per call, the last one repeating.
    An exception instance in the list is raised instead of returned.
    """

    def __init__(self, routes: dict[str, object] | None = None) -> None:
        self.routes: dict[str, object] = dict(routes or {})
        self.proxies: dict[str, str] = {}
        self.calls: list[str] = []
        self._lock = threading.Lock()
        self._served: dict[str, int] = {}

    def get(self, url: str, timeout: float | None = None, headers=None):
        with self._lock:
            self.calls.append(url)
            n = self._served.get(url, 0)
            self._served[url] = n + 1
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status_code=404, url=url)
        if isinstance(route, list):
            route = route[min(n, len(route) - 1)]
        if isinstance(route, BaseException):
            raise route
        assert isinstance(route, FakeResponse)
        if not route.url:
            route = FakeResponse(route.status_code, route.content, route.headers, url)
        return route

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)


def html_page(body: str) -> FakeResponse:
    return FakeResponse(
        content=f"<html><body>{body}</body></html>".encode("utf-8"),
        headers={"Content-Type": "text/html; charset=utf-8"},
    )


def jpeg(extra: bytes = b"") -> FakeResponse:
    return FakeResponse(content=JPEG + extra, headers={"Content-Type": "image/jpeg"})


class FakeAdapter(SiteAdapter):
    """Table-driven adapter: links and article images are given up front."""

    def __init__(
        self,
        *,
        seeds: list[str],
        links: dict[str, list[tuple[str, EntryKind]]] | None = None,
        images: dict[str, list[str]] | None = None,
        broken: set[str] | None = None,
        site: Site = Site.ENGLISH,
    ) -> None:
        self.site = site
        self.seeds = seeds
        self.links = links or {}
        self.images = images or {}
        self.broken = broken or set()

    def list_seed_urls(self) -> list[str]:
        return list(self.seeds)

    def allows(self, url: str, kind: EntryKind) -> bool:
        return True

    def extract_links(self, body: bytes, *, page_url: str, kind: EntryKind):
        return list(self.links.get(page_url, []))

    def extract_article(self, body: bytes, *, page_url: str) -> ArticleRecord:
        if page_url in self.broken:
            raise ParseError(page_url, "no article body")
        text = body.decode("utf-8")
        return ArticleRecord(
            title=f"Title of {logical_id_for_url(page_url)}",
            body_html=text,
            text=text,
            canonical_id=logical_id_for_url(page_url),
            source_url=page_url,
            image_urls=list(self.images.get(page_url, [])),
        )


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    return tmp_path / "archive"


@pytest.fixture
def make_crawler(out_dir: Path):
    opened: list[ArchiveIndex] = []

    def _make(
        session: FakeSession,
        adapter: SiteAdapter,
        *,
        state: CrawlState | None = None,
        concurrency: int = 4,
        checkpoint_interval_s: float = 60.0,
        stop_event: threading.Event | None = None,
    ) -> SiteCrawler:
        index = ArchiveIndex(out_dir / "archive.db")
        opened.append(index)
        return SiteCrawler(
            site=adapter.site,
            adapter=adapter,
            http=HttpClient(
                session,  # type: ignore[arg-type]
                max_retries=1,
                backoff_base_s=0,
            ),
            store=ContentStore(out_dir),
            index=index,
            state=state or CrawlState(out_dir / ".state"),
            manifest=ManifestWriter(out_dir),
            limits=SiteLimits(concurrency=concurrency, min_delay_s=0),
            checkpoint_interval_s=checkpoint_interval_s,
            stop_event=stop_event,
        )

    yield _make
    for index in opened:
        index.close()
