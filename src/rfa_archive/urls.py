from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import ParseResult, urljoin, urlparse, urlunparse

ORIGIN = "https://www.rfa.org/"

_TRACKING_QUERY_PREFIXES = ("utm_", "fbclid", "gclid")


def normalize_url(raw_url: str) -> str:
    """Normalize a URL for de-duplication.

    - Lowercases scheme + hostname.
    - Strips fragments.
    - Drops tracking query params known to create duplicates.
    """

    parsed: ParseResult = urlparse(raw_url.strip())
    scheme = (parsed.scheme or "").lower()
    netloc = (parsed.netloc or "").lower()

    query = parsed.query
    if query:
        kept = [
            part
            for part in query.split("&")
            if part and not part.lower().startswith(_TRACKING_QUERY_PREFIXES)
        ]
        query = "&".join(kept)

    parsed = parsed._replace(
        scheme=scheme,
        netloc=netloc,
        fragment="",
        query=query,
    )
    return urlunparse(parsed)


def absolutize(url: str, *, base: str = ORIGIN) -> str:
    """Resolve bare paths ("imgs/x.jpg", "/english/...") against the origin."""

    url = url.strip()
    if url.startswith("//"):
        return normalize_url("https:" + url)
    if not url.lower().startswith(("http://", "https://")):
        return normalize_url(urljoin(base, url))
    return normalize_url(url)


def logical_id_for_url(url: str) -> str:
    """Stable id for a page: its path without surrounding slashes.

    ``https://www.rfa.org/english/news/a1/?x=1`` -> ``english/news/a1``
    """

    path = urlparse(url).path
    return path.strip("/")


@dataclass(frozen=True)
class UrlScope:
    allow_host_suffixes: tuple[str, ...]
    path_prefix: str = ""

    def is_allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
        if not host:
            return False
        host_ok = False
        for suffix in self.allow_host_suffixes:
            suffix = suffix.lower().lstrip(".")
            if host == suffix or host.endswith("." + suffix):
                host_ok = True
                break
        if not host_ok:
            return False
        if not self.path_prefix:
            return True
        prefix = "/" + self.path_prefix.strip("/")
        path = parsed.path or "/"
        return path == prefix or path.startswith(prefix + "/")
