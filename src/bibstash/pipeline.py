"""One reconcile-and-seed pass over the static cache.

Each collection is processed on its own under its lock:

    load -> seed -> apply results -> reformat -> migrate -> reconcile -> save

A failure in one collection is logged and does not stop the others. The
root index is rebuilt once every collection has been processed.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from bibstash import files, index_store
from bibstash.cancellation import Cancelled, check_cancelled, current_token, use_token
from bibstash.errors import BibstashError, IndexIOError
from bibstash.filelock import DEFAULT_LOCK_TIMEOUT, LockTimeout, collection_lock
from bibstash.http import Fetcher
from bibstash.key_parser import OPENALEX_API
from bibstash.paths import collection_dir
from bibstash.root_index import build_root_index
from bibstash.seeder import MAX_REDIRECTS, apply_seed_result, seed

logger = logging.getLogger(__name__)


@dataclass
class CollectionReport:
    """What one pass did to one collection."""

    collection: str
    entries_before: int = 0
    entries_after: int = 0
    downloaded: int = 0
    queries: int = 0
    removed: int = 0
    redirected: int = 0
    reformatted: int = 0
    migrated: int = 0
    failures: int = 0
    cancelled: bool = False
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and not self.cancelled


@dataclass
class RunReport:
    """Reports for every collection plus whether the root index changed."""

    collections: list[CollectionReport] = field(default_factory=list)
    root_index_written: bool = False

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.collections)


def process_collection(
    data_root: Path,
    collection: str,
    fetcher: Fetcher | None,
    *,
    api_base: str = OPENALEX_API,
    max_redirects: int = MAX_REDIRECTS,
    offline: bool = False,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> CollectionReport:
    """Bring one collection's index and file tree into agreement.

    Args:
        data_root: Root of the static cache.
        collection: Collection directory name (e.g. ``"works"``).
        fetcher: Network collaborator; may be None when *offline*.
        api_base: Base URL of the upstream API.
        max_redirects: Redirect bound per entity fetch.
        offline: Skip seeding; only reformat, migrate, reconcile and save.
        lock_timeout: Seconds to wait for the collection lock.

    Returns:
        A :class:`CollectionReport`. Lock timeouts, unreadable or
        unwritable indexes and cancellation are reported in it rather
        than raised.
    """
    report = CollectionReport(collection)
    cdir = collection_dir(data_root, collection)
    cdir.mkdir(parents=True, exist_ok=True)

    try:
        check_cancelled(f"starting {collection}")
        with collection_lock(cdir, timeout=lock_timeout):
            _process_locked(cdir, report, fetcher, api_base, max_redirects, offline)
    except LockTimeout as exc:
        report.error = str(exc)
        logger.error("Skipping %s: %s", collection, exc)
    except IndexIOError as exc:
        report.error = str(exc)
        logger.error("Index error for %s: %s", collection, exc)
    except Cancelled:
        report.cancelled = True
        logger.warning("Processing of %s cancelled; index not saved", collection)

    return report


def _process_locked(
    cdir: Path,
    report: CollectionReport,
    fetcher: Fetcher | None,
    api_base: str,
    max_redirects: int,
    offline: bool,
) -> None:
    index = index_store.load(cdir, api_base=api_base)
    report.entries_before = len(index)

    if not offline and fetcher is not None and index:
        result = seed(cdir, index, fetcher, api_base=api_base, max_redirects=max_redirects)
        report.downloaded = result.downloaded
        report.queries = result.queries
        report.failures = result.failures
        report.removed = len(result.keys_to_remove)
        report.redirected = len(result.redirect_updates)
        if result.changes_index:
            index = apply_seed_result(index, result)
        if result.cancelled:
            # Keep what was fetched; the files are folded in below.
            report.cancelled = True

    report.reformatted = files.reformat_existing_files(cdir)
    report.migrated = files.migrate_query_files(cdir, api_base=api_base)

    index = index_store.reconcile_with_filesystem(cdir, index, api_base=api_base)
    index_store.save(cdir, index)
    report.entries_after = len(index)
    logger.info(
        "%s: %d -> %d entries (%d downloaded, %d queries, %d removed, %d redirected)",
        cdir.name, report.entries_before, report.entries_after,
        report.downloaded, report.queries, report.removed, report.redirected,
    )


def run(
    data_root: Path,
    collections: list[str],
    fetcher: Fetcher | None,
    *,
    api_base: str = OPENALEX_API,
    max_redirects: int = MAX_REDIRECTS,
    workers: int = 1,
    offline: bool = False,
) -> RunReport:
    """Process *collections* and rebuild the root index.

    Collections are independent: with ``workers > 1`` they run in a
    thread pool that shares the caller's cancellation token.
    """
    api_base = api_base.rstrip("/")
    data_root.mkdir(parents=True, exist_ok=True)
    report = RunReport()
    token = current_token()

    def one(collection: str) -> CollectionReport:
        with use_token(token):
            try:
                return process_collection(
                    data_root, collection, fetcher,
                    api_base=api_base, max_redirects=max_redirects, offline=offline,
                )
            except (BibstashError, OSError) as exc:
                logger.exception("Collection %s failed", collection)
                return CollectionReport(collection, error=str(exc))

    if workers > 1 and len(collections) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bibstash") as pool:
            report.collections = list(pool.map(one, collections))
    else:
        report.collections = [one(c) for c in collections]

    report.root_index_written = build_root_index(data_root, api_base=api_base)
    failed = [r.collection for r in report.collections if not r.ok]
    if failed:
        logger.warning("Pass finished with problems in: %s", ", ".join(failed))
    return report
