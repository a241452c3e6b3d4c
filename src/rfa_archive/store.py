from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from .content import MediaKind, StoredContent
from .errors import StorageError
from .manifest import relpath_posix
from .models import ArticleRecord

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 256

_KIND_DIRS = {
    MediaKind.IMAGE: "imgs",
    MediaKind.PAGE: "pages",
}


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json_bytes(doc: dict[str, Any]) -> bytes:
    """Deterministic JSON for a stored page document.

    Key order and whitespace are fixed so the same document always hashes the
    same, whatever run produced it.
    """

    return (
        json.dumps(doc, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
        + "\n"
    ).encode("utf-8")


def canonical_page_bytes(article: ArticleRecord) -> bytes:
    return canonical_json_bytes(article.to_document())


class ContentStore:
    """Content-addressed blob store for images and article documents.

    Layout: ``imgs/<hh>/<sha256>`` and ``pages/<hh>/<sha256>.json`` under
    ``root``. At most one physical copy exists per distinct byte sequence.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def _lock_for(self, digest: str) -> threading.Lock:
        # Striped on the fan-out directory byte.
        return self._locks[int(digest[:2], 16)]

    def path_for(self, digest: str, media_kind: MediaKind) -> Path:
        suffix = ".json" if media_kind == MediaKind.PAGE else ""
        return self.root / _KIND_DIRS[media_kind] / digest[:2] / f"{digest}{suffix}"

    def exists(self, digest: str, media_kind: MediaKind) -> bool:
        return self.path_for(digest, media_kind).is_file()

    def put(self, data: bytes, media_kind: MediaKind) -> tuple[str, bool]:
        digest = content_hash(data)
        path = self.path_for(digest, media_kind)

        with self._lock_for(digest):
            if path.is_file():
                return digest, False
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=path.parent, prefix=".tmp-", suffix=".part"
                )
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                logger.error("Failed to store %s object %s: %s", media_kind.value, digest, e)
                raise StorageError(f"Failed to store {digest}: {e}") from e

        return digest, True

    def get(self, digest: str, media_kind: MediaKind) -> bytes:
        path = self.path_for(digest, media_kind)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise KeyError(digest) from None

    def stat(self, digest: str, media_kind: MediaKind) -> StoredContent:
        path = self.path_for(digest, media_kind)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise KeyError(digest) from None
        return StoredContent(
            content_hash=digest,
            size_bytes=size,
            media_kind=media_kind,
            rel_path=relpath_posix(path, self.root),
        )
