#!/usr/bin/env python3
"""CLI for maintaining the static OpenAlex cache.

Usage:
    # Full pass: reconcile every collection, fetch what is missing
    bibstash sync

    # Only some collections, four at a time, verbose
    bibstash sync -c works -c authors --workers 4 -v

    # Reconcile indexes with the files on disk, no network
    bibstash reconcile

    # Rebuild the root index.json
    bibstash root-index

    # Show how a key is canonicalized and where its file lives
    bibstash parse-key "works?filter=doi:10.1038/nature12373"

    # Entry and file counts per collection
    bibstash stats
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import signal
import sys
from pathlib import Path

from bibstash import __version__, index_store
from bibstash.cancellation import new_token
from bibstash.config import CacheConfig, config_path, create_default, load_config
from bibstash.errors import BibstashError
from bibstash.filename_codec import canonical_url_to_filename
from bibstash.http import HttpFetcher
from bibstash.key_parser import (
    detect_malformed,
    normalize_for_dedup,
    repair_malformed,
    try_canonicalize,
)
from bibstash.paths import collection_dir
from bibstash.pipeline import RunReport, run
from bibstash.root_index import build_root_index, discover_collections

logger = logging.getLogger("bibstash")

LOG_FORMAT = "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s"

EXIT_OK = 0
EXIT_PROBLEMS = 1
EXIT_ERROR = 2
EXIT_CANCELLED = 130

_file_handler: logging.Handler | None = None


def _setup_logging(verbose: int, log_file: Path | None) -> None:
    """Stderr at WARNING (INFO with -v, DEBUG with -vv), plus an optional rotating file."""
    global _file_handler
    logger.setLevel(logging.DEBUG)
    if not any(getattr(h, "_bibstash_stderr", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        handler._bibstash_stderr = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    for h in logger.handlers:
        if getattr(h, "_bibstash_stderr", False):
            h.setLevel(level)

    if log_file is None or _file_handler is not None:
        return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)
    _file_handler = fh
    logger.info("Bibstash %s started; log attached to %s", __version__, log_file)


def _install_sigint_handler():
    """First Ctrl-C cancels the pass between keys; the second one aborts."""
    token = new_token()

    def handler(signum, frame):
        if token.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        print("\nCancelling after the current key (Ctrl-C again to abort)...", file=sys.stderr)
        token.set()

    signal.signal(signal.SIGINT, handler)
    return token


def _load(args: argparse.Namespace) -> CacheConfig:
    cfg = load_config(Path(args.config) if args.config else None)
    if args.data_root:
        cfg.data_root = Path(args.data_root)
    if getattr(args, "collection", None):
        cfg.collections = list(args.collection)
    if getattr(args, "workers", None):
        cfg.workers = args.workers
    _setup_logging(args.verbose, Path(args.log_file) if args.log_file else cfg.log_file)
    return cfg


def _print_report(report: RunReport) -> None:
    for r in report.collections:
        status = "ok" if r.ok else ("cancelled" if r.cancelled else "FAILED")
        print(
            f"  {r.collection:<13} {r.entries_before:>6} -> {r.entries_after:<6} "
            f"+{r.downloaded} files, {r.queries} queries, "
            f"-{r.removed} removed, {r.redirected} redirected  [{status}]"
        )
        if r.error:
            print(f"    {r.error}")
    print(f"  Root index: {'rewritten' if report.root_index_written else 'unchanged'}")


def _exit_code(report: RunReport) -> int:
    if any(r.cancelled for r in report.collections):
        return EXIT_CANCELLED
    return EXIT_OK if report.ok else EXIT_PROBLEMS


def cmd_sync(args: argparse.Namespace) -> int:
    """Reconcile and seed the configured collections."""
    cfg = _load(args)
    _install_sigint_handler()
    fetcher = HttpFetcher(
        mailto=cfg.mailto,
        api_key=cfg.api_key,
        timeout=cfg.timeout,
        max_retries=cfg.max_retries,
        min_interval=cfg.min_interval,
    )
    print(f"Syncing {len(cfg.collections)} collections under {cfg.data_root}")
    report = run(
        cfg.data_root,
        cfg.collections,
        fetcher,
        api_base=cfg.api_base,
        max_redirects=cfg.max_redirects,
        workers=cfg.workers,
    )
    _print_report(report)
    return _exit_code(report)


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Reconcile indexes with the files on disk without touching the network."""
    cfg = _load(args)
    _install_sigint_handler()
    print(f"Reconciling {len(cfg.collections)} collections under {cfg.data_root} (offline)")
    report = run(
        cfg.data_root,
        cfg.collections,
        None,
        api_base=cfg.api_base,
        workers=cfg.workers,
        offline=True,
    )
    _print_report(report)
    return _exit_code(report)


def cmd_root_index(args: argparse.Namespace) -> int:
    """Rebuild <data_root>/index.json."""
    cfg = _load(args)
    written = build_root_index(cfg.data_root, api_base=cfg.api_base)
    collections = discover_collections(cfg.data_root)
    print(f"Root index {'rewritten' if written else 'unchanged'} ({len(collections)} collections)")
    return EXIT_OK


def cmd_parse_key(args: argparse.Namespace) -> int:
    """Show the canonical form of a key."""
    cfg = _load(args)
    key = args.key
    print(f"Key:         {key}")
    if detect_malformed(key):
        repaired = repair_malformed(key, api_base=cfg.api_base)
        print(f"Malformed:   yes (repair attempt: {repaired})")
        key = repaired

    parsed = try_canonicalize(key, api_base=cfg.api_base)
    if parsed is None:
        print("Unparseable: no known key format matches")
        return EXIT_PROBLEMS

    url = normalize_for_dedup(parsed.canonical_url)
    print(f"Kind:        {parsed.kind.value}")
    print(f"Collection:  {parsed.collection}")
    if parsed.identifier:
        print(f"Identifier:  {parsed.identifier}")
    if parsed.query:
        print(f"Query:       {parsed.query}")
    print(f"Canonical:   {url}")
    print(f"File:        {parsed.collection}/{canonical_url_to_filename(url)}")
    return EXIT_OK


def cmd_stats(args: argparse.Namespace) -> int:
    """Entry and file counts per collection."""
    cfg = _load(args)
    print(f"Cache: {cfg.data_root}")
    total_entries = total_files = 0
    for name in discover_collections(cfg.data_root):
        cdir = collection_dir(cfg.data_root, name)
        entries = index_store.load(cdir, api_base=cfg.api_base)
        n_files = len(index_store.resource_files(cdir))
        print(f"  {name:<13} {len(entries):>7,} entries  {n_files:>7,} files")
        total_entries += len(entries)
        total_files += n_files
    print(f"  {'total':<13} {total_entries:>7,} entries  {total_files:>7,} files")
    return EXIT_OK


def cmd_init_config(args: argparse.Namespace) -> int:
    """Write a starter config.yaml."""
    path = Path(args.config) if args.config else config_path()
    existed = path.exists()
    create_default(path)
    print(f"{'Config already exists at' if existed else 'Wrote starter config to'} {path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Static OpenAlex cache maintenance",
        prog="bibstash",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default="", help="Path to config.yaml (default: ~/.bibstash/config.yaml)")
    parser.add_argument("--data-root", default="", help="Cache root directory (overrides config)")
    parser.add_argument("--log-file", default="", help="Also log to this rotating file (DEBUG level)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG on stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    # sync
    p1 = sub.add_parser("sync", help="Reconcile indexes and fetch missing files")
    p1.add_argument("-c", "--collection", action="append", default=[], help="Collection to process (repeatable)")
    p1.add_argument("--workers", type=int, default=0, help="Collections processed in parallel")
    p1.set_defaults(func=cmd_sync)

    # reconcile
    p2 = sub.add_parser("reconcile", help="Reconcile indexes with files on disk (no network)")
    p2.add_argument("-c", "--collection", action="append", default=[], help="Collection to process (repeatable)")
    p2.add_argument("--workers", type=int, default=0, help="Collections processed in parallel")
    p2.set_defaults(func=cmd_reconcile)

    # root-index
    p3 = sub.add_parser("root-index", help="Rebuild the root index.json")
    p3.set_defaults(func=cmd_root_index)

    # parse-key
    p4 = sub.add_parser("parse-key", help="Show how a key is canonicalized")
    p4.add_argument("key", help="Index key, URL, relative path or bare identifier")
    p4.set_defaults(func=cmd_parse_key)

    # stats
    p5 = sub.add_parser("stats", help="Show entry and file counts")
    p5.set_defaults(func=cmd_stats)

    # init-config
    p6 = sub.add_parser("init-config", help="Write a starter config.yaml")
    p6.set_defaults(func=cmd_init_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except BibstashError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("Aborted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
