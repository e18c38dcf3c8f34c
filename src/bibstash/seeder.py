"""Seeding: fetch what the index references but the file tree lacks.

For every index entry the seeder repairs or drops corrupted keys, checks
whether the canonical file exists, and fetches it if not. Entity fetches
follow redirects by hand (bounded, chain recorded) so that merged or
renamed upstream records can be re-keyed.

The seeder never mutates the index. It returns a :class:`SeedResult`
(keys to remove, redirect updates) that the caller applies with
:func:`apply_seed_result` in one step.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

from bibstash.cancellation import Cancelled, check_cancelled
from bibstash.errors import (
    MalformedRecoverable,
    MalformedUnrecoverable,
    NotFoundUpstream,
    RedirectLoopExceeded,
    TransientFetchFailure,
    Unparseable,
)
from bibstash.filename_codec import canonical_url_to_filename
from bibstash.files import write_json_atomic
from bibstash.http import Fetcher, strip_polite_params
from bibstash.index_store import CollectionIndex, IndexEntry, merge_entry, now_iso
from bibstash.key_parser import (
    OPENALEX_API,
    KeyKind,
    ParsedKey,
    detect_malformed,
    needs_repair,
    normalize_for_dedup,
    try_canonicalize,
    validate_repair,
)

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 10


@dataclass
class RedirectUpdate:
    """Re-key an entry: *old_key* becomes *new_key* carrying *entry*."""

    old_key: str
    new_key: str
    entry: IndexEntry


@dataclass
class SeedResult:
    """Outcome of one seeding pass over a collection."""

    keys_to_remove: set[str] = field(default_factory=set)
    redirect_updates: list[RedirectUpdate] = field(default_factory=list)
    downloaded: int = 0
    queries: int = 0
    failures: int = 0
    cancelled: bool = False

    @property
    def changes_index(self) -> bool:
        return bool(self.keys_to_remove or self.redirect_updates)


@dataclass
class FetchOutcome:
    """A successful fetch at the end of a redirect chain.

    ``cached`` marks a chain that stopped at a URL already on disk; its
    ``payload`` is None.
    """

    final_url: str
    chain: list[str]
    payload: Any
    cached: bool = False

    @property
    def redirected(self) -> bool:
        return len(self.chain) > 1


def follow_redirects(
    url: str,
    fetcher: Fetcher,
    *,
    max_redirects: int = MAX_REDIRECTS,
    stop_at: Callable[[str], bool] | None = None,
) -> FetchOutcome:
    """Fetch *url*, following up to *max_redirects* redirects by hand.

    When *stop_at* returns True for a redirect target, that target is not
    requested and the outcome comes back with ``cached=True``.

    Returns:
        The parsed payload with the full chain of visited URLs.

    Raises:
        NotFoundUpstream: The chain ended in HTTP 404.
        RedirectLoopExceeded: More than *max_redirects* redirects.
        TransientFetchFailure: Any other failure (network, non-404 error
            status, redirect without Location, empty or invalid body).
    """
    chain = [url]
    current = url

    for hop in range(max_redirects + 1):
        logger.debug("Fetching %s (hop %d)", current, hop)
        resp = fetcher.fetch_raw(current)

        if resp.is_redirect:
            if not resp.location:
                raise TransientFetchFailure(current, resp.status, "Redirect without Location header.")
            if hop == max_redirects:
                break
            current = urljoin(current, resp.location)
            chain.append(current)
            logger.debug("Following redirect %d: %s -> %s", hop + 1, chain[-2], current)
            if stop_at is not None and stop_at(current):
                logger.debug("Redirect target %s is already cached", current)
                return FetchOutcome(final_url=current, chain=chain, payload=None, cached=True)
            continue

        if resp.status == 404:
            raise NotFoundUpstream(current, chain)
        if not resp.ok:
            raise TransientFetchFailure(current, resp.status)
        if not resp.body:
            raise TransientFetchFailure(current, resp.status, "Empty response body.")
        try:
            payload = json.loads(resp.body)
        except json.JSONDecodeError as exc:
            raise TransientFetchFailure(current, resp.status, f"Invalid JSON: {exc}.") from exc
        return FetchOutcome(final_url=current, chain=chain, payload=payload)

    raise RedirectLoopExceeded(url, max_redirects, chain)


class _Seeder:
    """State for one pass over one collection."""

    def __init__(
        self,
        collection_dir: Path,
        fetcher: Fetcher,
        api_base: str,
        max_redirects: int,
    ):
        self.collection_dir = collection_dir
        self.collection = collection_dir.name
        self.fetcher = fetcher
        self.api_base = api_base.rstrip("/")
        self.max_redirects = max_redirects
        self.result = SeedResult()
        self.seen: set[str] = set()

    def _remove(self, key: str) -> None:
        self.result.keys_to_remove.add(key)

    def _redirect(self, key: str, new_key: str, entry: IndexEntry) -> None:
        carried = IndexEntry(now_iso(), entry.content_hash)
        self.result.redirect_updates.append(RedirectUpdate(key, new_key, carried))

    def _path_for(self, url: str) -> Path:
        return self.collection_dir / canonical_url_to_filename(url)

    def _canonical(self, parsed: ParsedKey) -> str:
        return normalize_for_dedup(parsed.canonical_url)

    def _hop_key(self, url: str) -> str | None:
        parsed = try_canonicalize(strip_polite_params(url), api_base=self.api_base)
        return self._canonical(parsed) if parsed is not None else None

    def _already_cached(self, url: str) -> bool:
        key = self._hop_key(url)
        return key is not None and self._path_for(key).exists()

    def run(self, index: CollectionIndex) -> SeedResult:
        for key, entry in list(index.items()):
            try:
                check_cancelled(f"seeding {self.collection}")
            except Cancelled:
                self.result.cancelled = True
                break
            self.seed_key(key, entry)

        r = self.result
        if r.downloaded or r.queries:
            logger.debug(
                "Seeded %s: %d entities downloaded, %d queries executed",
                self.collection, r.downloaded, r.queries,
            )
        else:
            logger.debug("All referenced files present for %s", self.collection)
        if r.keys_to_remove or r.redirect_updates:
            logger.info(
                "Index updates for %s: %d removals, %d redirects",
                self.collection, len(r.keys_to_remove), len(r.redirect_updates),
            )
        return r

    def seed_key(self, key: str, entry: IndexEntry) -> None:
        if needs_repair(key, api_base=self.api_base):
            self._repair(key, entry)
            return

        parsed = try_canonicalize(key, api_base=self.api_base)

        if parsed.collection != self.collection:
            logger.warning(
                "Key %s belongs to %s, not %s; removing", key, parsed.collection, self.collection
            )
            self._remove(key)
            return

        url = self._canonical(parsed)
        if self._path_for(url).exists() or url in self.seen:
            return
        self.seen.add(url)

        if parsed.kind is KeyKind.ENTITY:
            self._seed_entity(key, url, entry)
        else:
            self._seed_query(key, url)

    def _repair(self, key: str, entry: IndexEntry) -> None:
        try:
            parsed = validate_repair(key, self.collection, api_base=self.api_base)
        except MalformedUnrecoverable as exc:
            if exc.repaired == key and not detect_malformed(key):
                logger.warning("%s", Unparseable(key))
            else:
                logger.warning("%s", exc)
            self._remove(key)
            return

        new_key = self._canonical(parsed)
        logger.warning("%s", MalformedRecoverable(key, new_key))
        self._redirect(key, new_key, entry)

    def _seed_entity(self, key: str, url: str, entry: IndexEntry) -> None:
        try:
            outcome = follow_redirects(
                url, self.fetcher,
                max_redirects=self.max_redirects, stop_at=self._already_cached,
            )
        except NotFoundUpstream as exc:
            logger.warning("%s", exc)
            self._remove(key)
            return
        except RedirectLoopExceeded as exc:
            logger.error("%s Chain: %s", exc, " -> ".join(exc.chain))
            self.result.failures += 1
            return
        except TransientFetchFailure as exc:
            logger.warning("%s", exc)
            self.result.failures += 1
            return

        for hop in outcome.chain:
            hop_key = self._hop_key(hop)
            if hop_key is not None:
                self.seen.add(hop_key)

        target_url = url
        if outcome.redirected:
            final = strip_polite_params(outcome.final_url)
            final_parsed = try_canonicalize(final, api_base=self.api_base)
            if final_parsed is None or final_parsed.collection != self.collection:
                logger.warning(
                    "%s redirected outside %s (%s); removing",
                    url, self.collection, " -> ".join(outcome.chain),
                )
                self._remove(key)
                return
            target_url = self._canonical(final_parsed)

        if not outcome.cached:
            try:
                write_json_atomic(self._path_for(target_url), outcome.payload)
            except OSError as exc:
                logger.error("Failed to write %s: %s", self._path_for(target_url).name, exc)
                self.result.failures += 1
                return
            self.result.downloaded += 1

        if target_url != url:
            logger.warning(
                "Entity redirected; re-keying %s -> %s (chain: %s)",
                key, target_url, " -> ".join(outcome.chain),
            )
            self._redirect(key, target_url, entry)
        else:
            logger.debug("Downloaded %s", url)

    def _seed_query(self, key: str, url: str) -> None:
        payload = self.fetcher.fetch_json(url)
        if payload is None:
            logger.warning("Query %s returned no data; will retry next pass", key)
            self.result.failures += 1
            return
        try:
            write_json_atomic(self._path_for(url), payload)
        except OSError as exc:
            logger.error("Failed to write query result for %s: %s", key, exc)
            self.result.failures += 1
            return
        self.result.queries += 1
        logger.debug("Executed and cached query %s", url)


def seed(
    collection_dir: Path,
    index: CollectionIndex,
    fetcher: Fetcher,
    *,
    api_base: str = OPENALEX_API,
    max_redirects: int = MAX_REDIRECTS,
) -> SeedResult:
    """Fetch every resource *index* references that has no file yet.

    Per-key failures are logged and isolated. Transient failures and
    redirect loops leave the entry untouched for the next pass; 404s,
    unparseable keys and unrepairable corruption queue a removal.

    Args:
        collection_dir: ``<data_root>/<collection>``; its name is the collection.
        index: The loaded collection index (not modified).
        fetcher: Network collaborator (see :class:`bibstash.http.Fetcher`).
        api_base: Base URL of the upstream API.
        max_redirects: Redirect bound per entity fetch.

    Returns:
        A :class:`SeedResult` for :func:`apply_seed_result`.
    """
    return _Seeder(collection_dir, fetcher, api_base, max_redirects).run(index)


def apply_seed_result(index: CollectionIndex, result: SeedResult) -> CollectionIndex:
    """Return a new index with removals dropped and redirected keys re-keyed.

    A redirect onto a key that already exists is resolved with
    :func:`~bibstash.index_store.merge_entry`.
    """
    redirects = {u.old_key: u for u in result.redirect_updates}
    updated: CollectionIndex = {}
    for key, entry in index.items():
        if key in result.keys_to_remove:
            continue
        update = redirects.get(key)
        if update is not None:
            updated[update.new_key] = merge_entry(updated.get(update.new_key), update.entry)
        else:
            updated[key] = merge_entry(updated.get(key), entry)
    return updated
