from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import CheckpointWriteError
from .manifest import utc_iso
from .models import FrontierEntry, Site

logger = logging.getLogger(__name__)

OP_ADD = "add"
OP_VISIT = "visit"
OP_FAIL = "fail"


@dataclass
class CrawlCheckpoint:
    site: Site
    frontier: list[FrontierEntry] = field(default_factory=list)
    visited: set[str] = field(default_factory=set)
    failed: list[FrontierEntry] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)
    saved_at: str | None = None
    journal_gen: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "site": self.site.value,
            "saved_at": self.saved_at or utc_iso(),
            "journal_gen": self.journal_gen,
            "frontier": [e.to_dict() for e in self.frontier],
            "visited": sorted(self.visited),
            "failed": [e.to_dict() for e in self.failed],
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrawlCheckpoint":
        return cls(
            site=Site(data["site"]),
            frontier=[FrontierEntry.from_dict(e) for e in data.get("frontier") or []],
            visited=set(data.get("visited") or []),
            failed=[FrontierEntry.from_dict(e) for e in data.get("failed") or []],
            stats={k: int(v) for k, v in (data.get("stats") or {}).items()},
            saved_at=data.get("saved_at"),
            journal_gen=int(data.get("journal_gen") or 0),
        )

    def replay(self, ops: list[dict[str, Any]]) -> None:
        """Apply journal operations recorded after this snapshot."""

        pending = {e.url: e for e in self.frontier}
        failed = {e.url: e for e in self.failed}
        for op in ops:
            kind = op.get("op")
            if kind == OP_ADD:
                entry = FrontierEntry.from_dict(op["entry"])
                if entry.url not in self.visited and entry.url not in failed:
                    pending.setdefault(entry.url, entry)
            elif kind == OP_VISIT:
                url = op["url"]
                self.visited.add(url)
                pending.pop(url, None)
                failed.pop(url, None)
            elif kind == OP_FAIL:
                entry = FrontierEntry.from_dict(op["entry"])
                pending.pop(entry.url, None)
                failed[entry.url] = entry
        self.frontier = list(pending.values())
        self.failed = list(failed.values())


@dataclass
class CrawlState:
    """Per-site crawl state under ``state_dir``.

    ``<site>.json`` is a full snapshot, replaced atomically and only now and
    then. Every frontier change in between is appended to
    ``<site>.journal.<gen>``; a snapshot names the first generation that is
    not folded into it, so loading replays that one and any later ones.
    """

    state_dir: Path

    def __post_init__(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._gens: dict[Site, int] = {}
        self._gens_lock = threading.Lock()

    def path_for(self, site: Site) -> Path:
        return self.state_dir / f"{site.value}.json"

    def journal_path(self, site: Site, gen: int) -> Path:
        return self.state_dir / f"{site.value}.journal.{gen}"

    def journal_gens(self, site: Site) -> list[int]:
        prefix = f"{site.value}.journal."
        gens = []
        for path in self.state_dir.glob(prefix + "*"):
            suffix = path.name[len(prefix):]
            if suffix.isdigit():
                gens.append(int(suffix))
        return sorted(gens)

    def append_line(self, path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(line + "\n")

    # Journal.

    def journal(self, site: Site, op: dict[str, Any]) -> None:
        with self._gens_lock:
            gen = self._gens.setdefault(site, 0)
        try:
            self.append_line(
                self.journal_path(site, gen), json.dumps(op, ensure_ascii=False)
            )
        except OSError as e:
            raise CheckpointWriteError(
                f"Cannot append to crawl journal for {site.value}: {e}"
            ) from e

    def rotate(self, site: Site) -> int:
        """Start a new journal generation; later appends go there."""

        with self._gens_lock:
            on_disk = self.journal_gens(site)
            gen = max([self._gens.get(site, 0), *on_disk]) + 1
            self._gens[site] = gen
            return gen

    def prune(self, site: Site, *, before: int) -> None:
        for gen in self.journal_gens(site):
            if gen < before:
                self.journal_path(site, gen).unlink(missing_ok=True)

    def _read_journal(self, path: Path) -> list[dict[str, Any]]:
        ops: list[dict[str, Any]] = []
        for lineno, line in enumerate(
            path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            if not line.strip():
                continue
            try:
                op = json.loads(line)
            except ValueError:
                # Torn tail from a killed writer.
                logger.warning("Skipping unreadable journal line %s:%d", path, lineno)
                continue
            if isinstance(op, dict):
                ops.append(op)
        return ops

    # Snapshots.

    def _load_snapshot(self, site: Site) -> CrawlCheckpoint | None:
        path = self.path_for(site)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CrawlCheckpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Hand-edited or foreign file.
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
            return None

    def load(self, site: Site) -> CrawlCheckpoint | None:
        checkpoint = self._load_snapshot(site)
        start = checkpoint.journal_gen if checkpoint is not None else 0
        gens = [g for g in self.journal_gens(site) if g >= start]
        with self._gens_lock:
            self._gens[site] = max([self._gens.get(site, 0), start, *gens])
        if checkpoint is None and not gens:
            return None
        if checkpoint is None:
            checkpoint = CrawlCheckpoint(site=site)

        ops: list[dict[str, Any]] = []
        for gen in gens:
            ops.extend(self._read_journal(self.journal_path(site, gen)))
        try:
            checkpoint.replay(ops)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable crawl journal for %s: %s", site.value, e)
        return checkpoint

    def save(self, checkpoint: CrawlCheckpoint) -> Path:
        path = self.path_for(checkpoint.site)
        checkpoint.saved_at = utc_iso()
        payload = json.dumps(checkpoint.to_dict(), indent=1, ensure_ascii=False)
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=f".{checkpoint.site.value}-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CheckpointWriteError(
                f"Cannot write checkpoint for {checkpoint.site.value}: {e}"
            ) from e
        return path

    def clear(self, site: Site) -> None:
        self.path_for(site).unlink(missing_ok=True)
        for gen in self.journal_gens(site):
            self.journal_path(site, gen).unlink(missing_ok=True)
        with self._gens_lock:
            self._gens.pop(site, None)
