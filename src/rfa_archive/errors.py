from __future__ import annotations


class ArchiveError(Exception):
    """Base class for everything the archive pipeline raises."""


class TransientFetchError(ArchiveError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Transient failure fetching {url}: {reason}")
        self.url = url
        self.reason = reason


class PermanentFetchError(ArchiveError):
    def __init__(self, url: str, kind: str) -> None:
        super().__init__(f"Failed to fetch {url}: {kind}")
        self.url = url
        self.kind = kind


class NotFound(ArchiveError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Not found: {url}")
        self.url = url


class ParseError(ArchiveError):
    """The page does not match the template the site adapter expects."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Cannot parse {url}: {reason}")
        self.url = url
        self.reason = reason


class StorageError(ArchiveError):
    """Content store or index write failed for a single item."""


class CheckpointWriteError(ArchiveError):
    """A crawl checkpoint could not be persisted; the crawl must stop."""
