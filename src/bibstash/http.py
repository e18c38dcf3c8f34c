"""HTTP fetch collaborator for the seeder.

Provides retry-with-backoff for polite API usage, a JSON fetch that
reports failure as None, and a raw fetch that never follows redirects so
the seeder can walk redirect chains itself.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from bibstash.errors import TransientFetchFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_MIN_INTERVAL = 0.1  # seconds between requests (polite pool)

# Query parameters added per request, never part of a cache key
POLITE_PARAMS = frozenset({"mailto", "api_key"})


def _retry_delay(attempt: int, backoff_base: float, retry_after: str = "") -> float:
    """Backoff for *attempt*, stretched to a numeric ``Retry-After`` if longer."""
    delay = backoff_base * (2 ** attempt)
    if retry_after.strip().isdigit():
        delay = max(delay, float(retry_after))
    return delay


def _should_retry(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def get_with_retry(
    url: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    **kwargs,
) -> httpx.Response:
    """GET *url*, riding out rate limits, server errors and dropped connections.

    Attempt ``n`` (from 0) sleeps ``backoff_base * 2**n`` before the next
    one, or the server's ``Retry-After`` when that is longer. Redirects
    come back to the caller as 3xx responses; pass
    ``follow_redirects=True`` to let httpx chase them instead. Extra
    keyword arguments go straight to :func:`httpx.get`.

    Returns:
        The last response received. Once retries run out this can still
        be a 429 or 5xx.

    Raises:
        httpx.TransportError: The final attempt could not connect or timed out.
    """
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    kwargs.setdefault("follow_redirects", False)

    attempt = 0
    while True:
        try:
            resp = httpx.get(url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            if attempt >= max_retries:
                raise
            delay = _retry_delay(attempt, backoff_base)
            logger.debug("%s on %s; retrying in %.1fs", type(exc).__name__, url, delay)
        else:
            if attempt >= max_retries or not _should_retry(resp.status_code):
                return resp
            delay = _retry_delay(attempt, backoff_base, resp.headers.get("retry-after", ""))
            logger.debug("HTTP %d from %s; retrying in %.1fs", resp.status_code, url, delay)
        time.sleep(delay)
        attempt += 1


def strip_polite_params(url: str) -> str:
    """Remove ``mailto``/``api_key`` from a URL, keeping other params in order."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(k, v) for k, v in pairs if k not in POLITE_PARAMS]
    if len(kept) == len(pairs):
        return url
    return urlunsplit(parts._replace(query=urlencode(kept)))


@dataclass
class FetchResponse:
    """Status, headers and body of one un-redirected request."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def location(self) -> str | None:
        return self.headers.get("location")


class Fetcher(Protocol):
    """What the seeder needs from the network."""

    def fetch_json(self, url: str) -> Any | None: ...

    def fetch_raw(self, url: str) -> FetchResponse: ...


class HttpFetcher:
    """httpx-backed :class:`Fetcher` with polite-pool params and throttling."""

    def __init__(
        self,
        *,
        mailto: str = "",
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_interval: float = DEFAULT_MIN_INTERVAL,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.min_interval = min_interval
        self._params: dict[str, str] = {}
        if mailto:
            self._params["mailto"] = mailto
        if api_key:
            self._params["api_key"] = api_key
        self._last_call = 0.0
        self._throttle_lock = threading.Lock()

    def _throttle(self) -> None:
        """Sleep if needed so requests are at least ``min_interval`` apart.

        One fetcher is shared by every worker thread of a run; the lock
        makes the spacing hold across threads.
        """
        if self.min_interval <= 0:
            return
        with self._throttle_lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self._last_call = time.monotonic()

    def _get(self, url: str) -> httpx.Response:
        self._throttle()
        return get_with_retry(
            url,
            params=self._params or None,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

    def fetch_json(self, url: str) -> Any | None:
        """GET *url* and parse JSON; None on any failure (logged)."""
        try:
            resp = self._get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error("Error fetching %s: %s", url, exc)
            return None
        if not 200 <= resp.status_code < 300:
            logger.error("Query failed: %s returned HTTP %d", url, resp.status_code)
            return None
        try:
            return resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("Invalid JSON from %s: %s", url, exc)
            return None

    def fetch_raw(self, url: str) -> FetchResponse:
        """GET *url* without following redirects.

        Raises:
            TransientFetchFailure: On connection failure or timeout.
        """
        try:
            resp = self._get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransientFetchFailure(url, 0, str(exc)) from exc
        return FetchResponse(
            status=resp.status_code,
            headers={k.lower(): v for k, v in resp.headers.items()},
            body=resp.text,
        )
