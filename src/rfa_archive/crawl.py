from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    as_completed,
    wait,
)
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

import requests
from tqdm import tqdm

from .config import ArchiveConfig, SiteLimits
from .content import MediaKind
from .errors import (
    CheckpointWriteError,
    NotFound,
    ParseError,
    PermanentFetchError,
    StorageError,
)
from .http_client import INVALID_URL, FetchResult, HttpClient, SitePacer
from .index import ArchiveIndex
from .manifest import ManifestWriter, utc_iso
from .models import ArticleRecord, EntryKind, FrontierEntry, Site, StoryDocument
from .sites import SiteAdapter, adapter_for
from .state import OP_ADD, OP_FAIL, OP_VISIT, CrawlCheckpoint, CrawlState
from .store import ContentStore, canonical_json_bytes, canonical_page_bytes
from .urls import normalize_url

logger = logging.getLogger(__name__)

STAT_KEYS = (
    "fetched",
    "skipped_duplicate",
    "not_found",
    "parse_failed",
    "error",
    "pages_new",
    "images_new",
    "unchanged",
)


class CrawlPhase(str, Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    CRAWLING = "crawling"
    DRAINING = "draining"
    DONE = "done"


class Frontier:
    """FIFO queue of discovered URLs plus the visited set for one site.

    ``offer`` is the only way in and is an atomic check-and-insert, so a URL
    is handed to at most one worker. Taken entries stay "in flight" until
    ``mark_visited``; snapshots include them so a killed crawl redoes them.

    When ``journal`` is set, every accepted offer, visit and failure is passed
    to it under the lock before the in-memory change, in the order they
    happen.
    """

    def __init__(
        self,
        site: Site,
        *,
        visited: Iterable[str] = (),
        failed: Iterable[FrontierEntry] = (),
        journal: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.site = site
        self.journal = journal
        self._lock = threading.RLock()
        self._queue: deque[FrontierEntry] = deque()
        self._queued: set[str] = set()
        self._in_flight: dict[str, FrontierEntry] = {}
        self._visited: set[str] = set(visited)
        self._failed: dict[str, FrontierEntry] = {e.url: e for e in failed}

    def _log(self, op: dict[str, Any]) -> None:
        if self.journal is not None:
            self.journal(op)

    def offer(self, entry: FrontierEntry) -> bool:
        with self._lock:
            url = entry.url
            if (
                url in self._visited
                or url in self._queued
                or url in self._in_flight
                or url in self._failed
            ):
                return False
            self._log({"op": OP_ADD, "entry": entry.to_dict()})
            self._queued.add(url)
            self._queue.append(entry)
            return True

    def take(self) -> FrontierEntry | None:
        with self._lock:
            if not self._queue:
                return None
            entry = self._queue.popleft()
            self._queued.discard(entry.url)
            self._in_flight[entry.url] = entry
            return entry

    def mark_visited(self, url: str) -> None:
        with self._lock:
            self._log({"op": OP_VISIT, "url": url})
            self._in_flight.pop(url, None)
            self._visited.add(url)

    def mark_failed(self, entry: FrontierEntry) -> None:
        """Park an entry that may succeed on a later run; not visited."""
        with self._lock:
            self._log({"op": OP_FAIL, "entry": entry.to_dict()})
            self._in_flight.pop(entry.url, None)
            self._failed[entry.url] = entry

    def is_visited(self, url: str) -> bool:
        with self._lock:
            return url in self._visited

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold off snapshots while an index write and its visit mark land."""
        with self._lock:
            yield

    def snapshot(
        self,
    ) -> tuple[list[FrontierEntry], set[str], list[FrontierEntry]]:
        with self._lock:
            entries = list(self._in_flight.values()) + list(self._queue)
            return entries, set(self._visited), list(self._failed.values())

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


class SiteCrawler:
    """Breadth-first crawl of one site with a bounded worker pool."""

    def __init__(
        self,
        *,
        site: Site,
        adapter: SiteAdapter,
        http: HttpClient,
        store: ContentStore,
        index: ArchiveIndex,
        state: CrawlState,
        manifest: ManifestWriter,
        limits: SiteLimits | None = None,
        checkpoint_interval_s: float = 60.0,
        retry_failed: bool = True,
        stop_event: threading.Event | None = None,
        show_progress: bool = False,
        progress_position: int = 0,
    ) -> None:
        self.site = site
        self.adapter = adapter
        self.http = http
        self.store = store
        self.index = index
        self.state = state
        self.manifest = manifest
        self.limits = limits or SiteLimits()
        self.checkpoint_interval_s = max(0.0, checkpoint_interval_s)
        self.retry_failed = retry_failed
        self.stop_event = stop_event or threading.Event()
        self.show_progress = show_progress
        self.progress_position = progress_position

        self.pacer = SitePacer(
            min_delay_s=self.limits.min_delay_s,
            max_concurrency=self.limits.concurrency,
        )
        self.phase = CrawlPhase.IDLE
        self.frontier = Frontier(site)
        self._stats: Counter[str] = Counter({k: 0 for k in STAT_KEYS})
        self._stats_lock = threading.Lock()
        self._last_checkpoint = time.monotonic()

    # Bookkeeping.

    def _set_phase(self, phase: CrawlPhase) -> None:
        if phase != self.phase:
            logger.debug("%s: %s -> %s", self.site.value, self.phase.value, phase.value)
            self.phase = phase

    def _count(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    @property
    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _event(self, kind: str, entry: FrontierEntry, **extra: object) -> None:
        event: dict = {
            "kind": kind,
            "site": self.site.value,
            "url": entry.url,
            "entry_kind": entry.kind.value,
        }
        event.update(extra)
        try:
            self.manifest.append(event)
        except OSError as e:
            logger.warning("%s: cannot append manifest event: %s", self.site.value, e)

    def checkpoint(self) -> None:
        """Write a full snapshot and start a new journal generation.

        The snapshot and the rotation happen under the frontier lock, so the
        operations journaled before the rotation are exactly the ones the
        snapshot already holds.
        """

        with self.frontier.transaction():
            entries, visited, failed = self.frontier.snapshot()
            gen = self.state.rotate(self.site)
        self.state.save(
            CrawlCheckpoint(
                site=self.site,
                frontier=entries,
                visited=visited,
                failed=failed,
                stats=self.stats,
                journal_gen=gen,
            )
        )
        self.state.prune(self.site, before=gen)
        self._last_checkpoint = time.monotonic()

    def _checkpoint_due(self) -> bool:
        return time.monotonic() - self._last_checkpoint >= self.checkpoint_interval_s

    # Seeding.

    def _enqueue(self, entry: FrontierEntry) -> bool:
        if not self.adapter.allows(entry.url, entry.kind):
            logger.debug("%s: out of scope: %s", self.site.value, entry.url)
            return False
        if (
            entry.kind == EntryKind.LIST
            and self.limits.max_depth is not None
            and entry.depth > self.limits.max_depth
        ):
            return False
        if self.frontier.offer(entry):
            return True
        self._count("skipped_duplicate")
        return False

    def seed(self, *, resume: bool = True) -> int:
        self._set_phase(CrawlPhase.SEEDING)
        if resume:
            checkpoint = self.state.load(self.site)
        else:
            self.state.clear(self.site)
            checkpoint = None

        carried: list[FrontierEntry] = []
        parked: list[FrontierEntry] = []
        visited: set[str] = set()
        if checkpoint is not None:
            visited = set(checkpoint.visited)
            carried = list(checkpoint.frontier)
            if self.retry_failed:
                carried.extend(checkpoint.failed)
            else:
                parked = list(checkpoint.failed)
            logger.info(
                "%s: resuming: %d visited, %d pending",
                self.site.value,
                len(visited),
                len(carried),
            )

        self.frontier = Frontier(self.site, visited=visited, failed=parked)
        added = 0
        for entry in carried:
            if self.frontier.offer(entry):
                added += 1
        for url in self.adapter.list_seed_urls():
            entry = FrontierEntry(self.site, normalize_url(url), EntryKind.LIST, 0)
            if self.frontier.offer(entry):
                added += 1

        self.checkpoint()
        self.frontier.journal = lambda op: self.state.journal(self.site, op)
        return added

    # Per-entry work; runs on pool threads.

    def _discover(self, parent: FrontierEntry, links: Iterable[tuple[str, EntryKind]]) -> None:
        for url, kind in links:
            self._enqueue(
                FrontierEntry(self.site, normalize_url(url), kind, parent.depth + 1)
            )

    def _put(self, data: bytes, media_kind: MediaKind) -> tuple[str, bool]:
        digest, is_new = self.store.put(data, media_kind)
        self.index.register_content(self.store.stat(digest, media_kind))
        return digest, is_new

    def _record(
        self,
        entry: FrontierEntry,
        result: FetchResult,
        digest: str,
        media_kind: MediaKind,
        *,
        logical_id: str,
        title: str | None = None,
        display_date: str | None = None,
    ) -> None:
        self.index.record(
            self.site,
            logical_id,
            digest,
            entry.url,
            utc_iso(result.fetched_at),
            media_kind=media_kind,
            title=title,
            display_date=display_date,
        )

    def _count_stored(self, media_kind: MediaKind, is_new: bool) -> None:
        if is_new:
            self._count("images_new" if media_kind == MediaKind.IMAGE else "pages_new")
        else:
            self._count("unchanged")

    def _handle_article(self, entry: FrontierEntry, result: FetchResult) -> None:
        body = result.body or b""
        article: ArticleRecord = self.adapter.extract_article(body, page_url=entry.url)
        links = list(self.adapter.extract_links(body, page_url=entry.url, kind=entry.kind))
        links.extend((u, EntryKind.IMAGE) for u in article.image_urls)
        # Children go in before the visit mark, so no state shows the
        # article done while its images are nowhere.
        self._discover(entry, links)

        digest, is_new = self._put(canonical_page_bytes(article), MediaKind.PAGE)
        with self.frontier.transaction():
            self._record(
                entry,
                result,
                digest,
                MediaKind.PAGE,
                logical_id=article.canonical_id,
                title=article.title,
                display_date=article.display_date,
            )
            self.frontier.mark_visited(entry.url)
        self._count_stored(MediaKind.PAGE, is_new)
        self._event(
            "fetched",
            entry,
            logical_id=article.canonical_id,
            title=article.title,
            is_new=is_new,
        )

    def _handle_image(self, entry: FrontierEntry, result: FetchResult) -> None:
        logical_id = self.adapter.logical_id(entry.url, EntryKind.IMAGE)
        digest, is_new = self._put(result.body or b"", MediaKind.IMAGE)
        with self.frontier.transaction():
            self._record(entry, result, digest, MediaKind.IMAGE, logical_id=logical_id)
            self.frontier.mark_visited(entry.url)
        self._count_stored(MediaKind.IMAGE, is_new)
        self._event("fetched", entry, logical_id=logical_id, is_new=is_new)

    def _handle_list(self, entry: FrontierEntry, result: FetchResult) -> None:
        body = result.body or b""
        documents: list[StoryDocument] = self.adapter.extract_documents(
            body, page_url=entry.url, kind=entry.kind
        )
        links = self.adapter.extract_links(body, page_url=entry.url, kind=entry.kind)
        self._discover(entry, links)

        stored = [
            (doc, *self._put(canonical_json_bytes(doc.document), MediaKind.PAGE))
            for doc in documents
        ]
        with self.frontier.transaction():
            for doc, digest, _ in stored:
                self._record(
                    entry,
                    result,
                    digest,
                    MediaKind.PAGE,
                    logical_id=doc.logical_id,
                    title=doc.title,
                    display_date=doc.display_date,
                )
            self.frontier.mark_visited(entry.url)
        for _, _, is_new in stored:
            self._count_stored(MediaKind.PAGE, is_new)
        self._event("fetched", entry, links=len(links), documents=len(stored))

    def _fail(self, entry: FrontierEntry, *, retryable: bool) -> None:
        if retryable:
            self.frontier.mark_failed(entry)
        else:
            self.frontier.mark_visited(entry.url)

    def process(self, entry: FrontierEntry) -> None:
        """Fetch one entry and act on it. Per-URL failures are counted and
        logged here; only unexpected exceptions escape."""

        with self.pacer.slot():
            result = self.http.fetch(entry.url, entry.kind.media_kind)

        try:
            result.raise_for_status()
        except NotFound:
            logger.warning("%s: not found: %s", self.site.value, entry.url)
            self._count("not_found")
            self._event("not_found", entry, status_code=result.status_code)
            self._fail(entry, retryable=False)
            return
        except PermanentFetchError as e:
            logger.warning("%s: fetch failed (%s): %s", self.site.value, e.kind, entry.url)
            self._count("error")
            self._event("error", entry, error=e.kind, status_code=result.status_code)
            self._fail(entry, retryable=e.kind != INVALID_URL)
            return

        self._count("fetched")
        try:
            if entry.kind == EntryKind.IMAGE:
                self._handle_image(entry, result)
            elif entry.kind == EntryKind.ARTICLE:
                self._handle_article(entry, result)
            else:
                self._handle_list(entry, result)
        except ParseError as e:
            logger.warning("%s: %s", self.site.value, e)
            self._count("parse_failed")
            self._event("parse_failed", entry, error=e.reason)
            self._fail(entry, retryable=False)
        except StorageError as e:
            logger.error("%s: storage failed for %s: %s", self.site.value, entry.url, e)
            self._count("error")
            self._event("error", entry, error=f"storage: {e}")
            self._fail(entry, retryable=True)

    # Driver.

    def run(self, *, resume: bool = True) -> dict:
        started_at = utc_iso()
        self.seed(resume=resume)
        if len(self.frontier) == 0:
            logger.info("%s: nothing to do", self.site.value)
            self._set_phase(CrawlPhase.DONE)
            self.checkpoint()
            return self._summary(started_at, stopped=False)

        self._set_phase(CrawlPhase.CRAWLING)
        logger.info("%s: crawling, %d entries queued", self.site.value, len(self.frontier))

        stopped = False
        workers = max(1, self.limits.concurrency)
        progress = tqdm(
            desc=self.site.value,
            unit="url",
            position=self.progress_position,
            disable=not self.show_progress,
            leave=True,
        )
        try:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix=f"crawl-{self.site.value}"
            ) as pool:
                in_flight: set[Future] = set()
                while True:
                    if self.stop_event.is_set() and not stopped:
                        stopped = True
                        logger.info(
                            "%s: stop requested, waiting for %d in-flight fetches",
                            self.site.value,
                            len(in_flight),
                        )

                    if not stopped:
                        while len(in_flight) < workers:
                            entry = self.frontier.take()
                            if entry is None:
                                break
                            in_flight.add(pool.submit(self.process, entry))

                    if not in_flight:
                        break

                    if not stopped and len(self.frontier) > 0:
                        self._set_phase(CrawlPhase.CRAWLING)
                    else:
                        self._set_phase(CrawlPhase.DRAINING)

                    done, in_flight = wait(in_flight, timeout=0.5, return_when=FIRST_COMPLETED)
                    for fut in done:
                        fut.result()
                        progress.update(1)
                        if self._checkpoint_due():
                            self.checkpoint()
        finally:
            progress.close()

        self.checkpoint()
        self._set_phase(CrawlPhase.DONE)
        return self._summary(started_at, stopped=stopped)

    def _summary(self, started_at: str, *, stopped: bool) -> dict:
        entries, visited, failed = self.frontier.snapshot()
        summary = {
            "site": self.site.value,
            "started_at": started_at,
            "finished_at": utc_iso(),
            "phase": self.phase.value,
            "stopped": stopped,
            "stats": self.stats,
            "remaining_frontier": len(entries),
            "visited": len(visited),
            "failed": len(failed),
        }
        stats = summary["stats"]
        logger.info(
            "%s: fetched=%d skipped_duplicate=%d not_found=%d parse_failed=%d error=%d",
            self.site.value,
            stats["fetched"],
            stats["skipped_duplicate"],
            stats["not_found"],
            stats["parse_failed"],
            stats["error"],
        )
        return summary


def run_archive(
    config: ArchiveConfig,
    *,
    session: requests.Session | None = None,
    stop_event: threading.Event | None = None,
    adapters: dict[Site, SiteAdapter] | None = None,
) -> dict[str, dict]:
    """Crawl every configured site in parallel into ``config.out_dir``.

    Raises CheckpointWriteError after the other sites have stopped if any
    site's checkpoint could not be written.
    """

    config.out_dir.mkdir(parents=True, exist_ok=True)
    stop_event = stop_event or threading.Event()
    http = HttpClient(
        session or requests.Session(),
        timeout_s=config.timeout_s,
        max_retries=config.max_retries,
        backoff_base_s=config.backoff_base_s,
        proxy=config.proxy,
    )
    store = ContentStore(config.out_dir)
    state = CrawlState(config.state_dir)
    manifest = ManifestWriter(config.out_dir)
    adapters = adapters or {}

    started_at = utc_iso()
    summaries: dict[str, dict] = {}
    fatal: list[CheckpointWriteError] = []

    with ArchiveIndex(config.db_path) as index:
        crawlers = [
            SiteCrawler(
                site=site,
                adapter=adapters.get(site)
                or adapter_for(
                    site, start_month=config.start_month, end_month=config.end_month
                ),
                http=http,
                store=store,
                index=index,
                state=state,
                manifest=manifest,
                limits=config.limits_for(site),
                checkpoint_interval_s=config.checkpoint_interval_s,
                retry_failed=config.retry_failed,
                stop_event=stop_event,
                show_progress=config.show_progress,
                progress_position=pos,
            )
            for pos, site in enumerate(config.sites)
        ]
        if not crawlers:
            return summaries

        with ThreadPoolExecutor(
            max_workers=len(crawlers), thread_name_prefix="site"
        ) as pool:
            futures = {
                pool.submit(c.run, resume=config.resume): c for c in crawlers
            }
            for fut in as_completed(futures):
                crawler = futures[fut]
                try:
                    summaries[crawler.site.value] = fut.result()
                except CheckpointWriteError as e:
                    logger.error("%s: %s; stopping all sites", crawler.site.value, e)
                    stop_event.set()
                    fatal.append(e)

    manifest.write_summary(
        {
            "started_at": started_at,
            "finished_at": utc_iso(),
            "out_dir": str(config.out_dir),
            "sites": summaries,
        }
    )
    if fatal:
        raise fatal[0]
    return summaries
