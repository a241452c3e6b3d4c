from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import requests
from requests import exceptions as req_exc

from .content import MediaKind, bare_content_type, is_compatible
from .errors import NotFound, PermanentFetchError, TransientFetchError
from .urls import absolutize

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUSES = {429, 500, 502, 503, 504}
NOT_FOUND_HTTP_STATUSES = {404, 410}
INVALID_URL = "invalid_url"

_INVALID_URL_ERRORS = (req_exc.InvalidURL, req_exc.MissingSchema, req_exc.InvalidSchema)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36 rfa-archive/0.1"
)


def _retry_after_seconds(headers: dict[str, str]) -> float | None:
    retry_after = headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


class FetchStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status: FetchStatus
    status_code: int
    content_type: str | None
    fetched_at: float
    body: bytes | None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    def raise_for_status(self) -> None:
        if self.status == FetchStatus.NOT_FOUND:
            raise NotFound(self.url)
        if self.status == FetchStatus.ERROR:
            raise PermanentFetchError(self.url, self.error_kind or "error")


class HttpClient:
    """Retrieves pages and images with retry/backoff.

    Holds no per-request state; one instance is shared by every worker.
    """

    def __init__(
        self,
        session: requests.Session,
        *,
        timeout_s: float = 30,
        max_retries: int = 4,
        backoff_base_s: float = 1.0,
        proxy: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._session = session
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._backoff_base_s = backoff_base_s
        self._headers = {"User-Agent": user_agent}
        if proxy:
            self._session.proxies.update({"http": proxy, "https": proxy})

    def _error(
        self, url: str, kind: str, *, status_code: int = 0, final_url: str = ""
    ) -> FetchResult:
        return FetchResult(
            url=url,
            final_url=final_url or url,
            status=FetchStatus.ERROR,
            status_code=status_code,
            content_type=None,
            fetched_at=time.time(),
            body=None,
            error_kind=kind,
        )

    def _attempt(self, url: str) -> requests.Response:
        try:
            resp = self._session.get(
                url, timeout=self._timeout_s, headers=self._headers
            )
        except _INVALID_URL_ERRORS as e:
            raise PermanentFetchError(url, INVALID_URL) from e
        except req_exc.RequestException as e:
            raise TransientFetchError(url, f"{type(e).__name__}: {e}") from e
        return resp

    def fetch(self, url: str, expected: MediaKind) -> FetchResult:
        normalized = absolutize(url)
        last_error: TransientFetchError | None = None

        for attempt in range(self._max_retries + 1):
            wait_s = self._backoff_base_s * (2**attempt)
            try:
                resp = self._attempt(normalized)
            except PermanentFetchError as e:
                logger.debug("%s: %s", normalized, e.__cause__)
                return self._error(normalized, e.kind)
            except TransientFetchError as e:
                last_error = e
                logger.debug("attempt %d for %s failed: %s", attempt + 1, url, e)
                if attempt < self._max_retries:
                    time.sleep(wait_s)
                continue

            status_code = int(resp.status_code)

            if status_code in TRANSIENT_HTTP_STATUSES:
                last_error = TransientFetchError(normalized, f"HTTP {status_code}")
                if attempt < self._max_retries:
                    retry_after = _retry_after_seconds(dict(resp.headers))
                    time.sleep(retry_after if retry_after is not None else wait_s)
                continue

            if status_code in NOT_FOUND_HTTP_STATUSES:
                return FetchResult(
                    url=normalized,
                    final_url=str(resp.url or normalized),
                    status=FetchStatus.NOT_FOUND,
                    status_code=status_code,
                    content_type=resp.headers.get("Content-Type"),
                    fetched_at=time.time(),
                    body=None,
                )

            if not 200 <= status_code < 300:
                return self._error(
                    normalized,
                    f"http_{status_code}",
                    status_code=status_code,
                    final_url=str(resp.url or normalized),
                )

            content_type = resp.headers.get("Content-Type")
            body = resp.content
            if not is_compatible(expected, content_type=content_type, body=body):
                logger.debug(
                    "%s: expected %s, got %s",
                    normalized,
                    expected.value,
                    bare_content_type(content_type) or "no content type",
                )
                return self._error(
                    normalized,
                    "content_type_mismatch",
                    status_code=status_code,
                    final_url=str(resp.url or normalized),
                )

            return FetchResult(
                url=normalized,
                final_url=str(resp.url or normalized),
                status=FetchStatus.OK,
                status_code=status_code,
                content_type=content_type,
                fetched_at=time.time(),
                body=body,
            )

        logger.warning(
            "Giving up on %s after %d attempts: %s",
            normalized,
            self._max_retries + 1,
            last_error,
        )
        return self._error(normalized, "transient")


class SitePacer:
    """Per-site politeness: a concurrency cap plus a minimum gap between
    request starts, shared by every worker crawling that site."""

    def __init__(self, *, min_delay_s: float, max_concurrency: int) -> None:
        self.min_delay_s = min_delay_s
        self._slots = threading.BoundedSemaphore(max(1, max_concurrency))
        self._lock = threading.Lock()
        self._next_start = 0.0

    def _wait_turn(self) -> None:
        with self._lock:
            now = time.monotonic()
            start_at = max(now, self._next_start)
            self._next_start = start_at + self.min_delay_s
        delay = start_at - now
        if delay > 0:
            time.sleep(delay)

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._slots:
            self._wait_turn()
            yield
