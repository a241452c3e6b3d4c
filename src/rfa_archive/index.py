from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

from .content import MediaKind, StoredContent
from .errors import StorageError
from .manifest import utc_iso
from .models import ArchiveRecord, Site

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS contents(
  content_hash TEXT PRIMARY KEY,
  media_kind TEXT NOT NULL,
  size_bytes INTEGER NOT NULL,
  rel_path TEXT NOT NULL,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS records(
  site TEXT NOT NULL,
  site_code INTEGER NOT NULL,
  logical_id TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  media_kind TEXT NOT NULL,
  source_url TEXT NOT NULL,
  title TEXT,
  display_date TEXT,
  fetched_at TEXT NOT NULL,
  first_seen_at TEXT NOT NULL,
  PRIMARY KEY (site, logical_id)
);
CREATE INDEX IF NOT EXISTS idx_records_hash ON records(content_hash);
CREATE INDEX IF NOT EXISTS idx_records_site_date
  ON records(site_code, media_kind, display_date);
"""

_RECORD_COLUMNS = (
    "site, logical_id, content_hash, media_kind, source_url, "
    "fetched_at, first_seen_at, title, display_date"
)


def _row_to_record(row: tuple) -> ArchiveRecord:
    return ArchiveRecord(
        site=Site(row[0]),
        logical_id=row[1],
        content_hash=row[2],
        media_kind=MediaKind(row[3]),
        source_url=row[4],
        fetched_at=row[5],
        first_seen_at=row[6],
        title=row[7],
        display_date=row[8],
    )


class ArchiveIndex:
    """SQLite index from (site, logical id) to stored content.

    Writers are the site crawlers; the web server opens the same file
    read-only and uses ``lookup``/``list_articles``.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._con = sqlite3.connect(str(db_path), check_same_thread=False)
            self._con.execute("PRAGMA journal_mode=WAL")
            self._con.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open index {db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._con.close()

    def __enter__(self) -> "ArchiveIndex":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write(self, sql: str, params: tuple) -> None:
        with self._lock:
            try:
                with self._con:
                    self._con.execute(sql, params)
            except sqlite3.Error as e:
                logger.error("Index write failed: %s", e)
                raise StorageError(f"Index write failed: {e}") from e

    def register_content(self, stored: StoredContent) -> None:
        self._write(
            "INSERT OR IGNORE INTO contents"
            "(content_hash, media_kind, size_bytes, rel_path, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (
                stored.content_hash,
                stored.media_kind.value,
                stored.size_bytes,
                stored.rel_path,
                utc_iso(),
            ),
        )

    def record(
        self,
        site: Site,
        logical_id: str,
        content_hash: str,
        source_url: str,
        timestamp: str,
        *,
        media_kind: MediaKind,
        title: str | None = None,
        display_date: str | None = None,
    ) -> None:
        """Upsert a record; newest content wins, first_seen_at is kept."""

        self._write(
            f"INSERT INTO records({_RECORD_COLUMNS}, site_code)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(site, logical_id) DO UPDATE SET"
            " content_hash=excluded.content_hash,"
            " media_kind=excluded.media_kind,"
            " source_url=excluded.source_url,"
            " fetched_at=excluded.fetched_at,"
            " title=COALESCE(excluded.title, records.title),"
            " display_date=COALESCE(excluded.display_date, records.display_date)",
            (
                site.value,
                logical_id,
                content_hash,
                media_kind.value,
                source_url,
                timestamp,
                timestamp,
                title,
                display_date,
                site.code,
            ),
        )

    def _query(self, sql: str, params: tuple) -> list[tuple]:
        with self._lock:
            return self._con.execute(sql, params).fetchall()

    def lookup(self, site: Site, logical_id: str) -> ArchiveRecord | None:
        rows = self._query(
            f"SELECT {_RECORD_COLUMNS} FROM records"
            " WHERE site = ? AND logical_id = ?",
            (site.value, logical_id.strip("/")),
        )
        if not rows:
            return None
        return _row_to_record(rows[0])

    def lookup_by_hash(self, content_hash: str) -> list[ArchiveRecord]:
        rows = self._query(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE content_hash = ?"
            " ORDER BY site, logical_id",
            (content_hash,),
        )
        return [_row_to_record(r) for r in rows]

    def content(self, content_hash: str) -> StoredContent | None:
        rows = self._query(
            "SELECT content_hash, size_bytes, media_kind, rel_path"
            " FROM contents WHERE content_hash = ?",
            (content_hash,),
        )
        if not rows:
            return None
        digest, size, kind, rel_path = rows[0]
        return StoredContent(
            content_hash=digest,
            size_bytes=int(size),
            media_kind=MediaKind(kind),
            rel_path=rel_path,
        )

    def list_articles(
        self,
        site: Site,
        *,
        prefix: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ArchiveRecord]:
        """Newest articles of a site, optionally under a section prefix."""

        sql = (
            f"SELECT {_RECORD_COLUMNS} FROM records"
            " WHERE site_code = ? AND media_kind = ?"
        )
        params: list[object] = [site.code, MediaKind.PAGE.value]
        if prefix:
            escaped = (
                prefix.strip("/")
                .replace("\\", "\\\\")
                .replace("%", "\\%")
                .replace("_", "\\_")
            )
            sql += " AND logical_id LIKE ? ESCAPE '\\'"
            params.append(escaped + "/%")
        sql += (
            " ORDER BY display_date IS NULL, display_date DESC, fetched_at DESC"
            " LIMIT ? OFFSET ?"
        )
        params.extend([limit, offset])
        return [_row_to_record(r) for r in self._query(sql, tuple(params))]

    def count(self, site: Site | None = None) -> int:
        if site is None:
            rows = self._query("SELECT COUNT(*) FROM records", ())
        else:
            rows = self._query(
                "SELECT COUNT(*) FROM records WHERE site = ?", (site.value,)
            )
        return int(rows[0][0])
