"""Resource-file maintenance: stable formatting, atomic writes, legacy layout migration."""

from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any

from bibstash.filename_codec import canonical_url_to_filename, determine_query_url
from bibstash.index_store import resource_files
from bibstash.key_parser import OPENALEX_API

logger = logging.getLogger(__name__)

LEGACY_QUERIES_DIR = "queries"


def dumps_stable(data: Any) -> str:
    """Serialize JSON the way every resource file is stored (2-space indent)."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def write_text_atomic(path: Path, text: str) -> Path:
    """Write *text* to *path* via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
    return path


def write_json_atomic(path: Path, data: Any) -> Path:
    """Write *data* to *path* with stable formatting, atomically."""
    return write_text_atomic(path, dumps_stable(data))


def format_consistently(text: str) -> str:
    """Re-serialize a JSON document with stable formatting.

    Raises:
        json.JSONDecodeError: If *text* is not JSON.
    """
    return dumps_stable(json.loads(text))


def reformat_existing_files(collection_dir: Path) -> int:
    """Rewrite resource files whose formatting drifted. Returns count rewritten."""
    count = 0
    for path in resource_files(collection_dir):
        try:
            original = path.read_text(encoding="utf-8")
            formatted = format_consistently(original)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Could not reformat %s: %s", path.name, exc)
            continue
        if formatted == original:
            continue
        try:
            write_text_atomic(path, formatted)
        except OSError as exc:
            logger.warning("Could not rewrite %s: %s", path.name, exc)
            continue
        count += 1

    if count:
        logger.debug("Reformatted %d files in %s", count, collection_dir.name)
    return count


def migrate_query_files(collection_dir: Path, *, api_base: str = OPENALEX_API) -> int:
    """Move query results from the old ``<collection>/queries/`` layout.

    Each file is renamed to its canonical filename in the collection
    directory. Files whose URL cannot be recovered, or whose target
    already exists, stay where they are.

    Returns:
        Number of files moved.
    """
    queries_dir = collection_dir / LEGACY_QUERIES_DIR
    if not queries_dir.is_dir():
        return 0

    collection = collection_dir.name
    moved = 0
    for path in resource_files(queries_dir):
        try:
            text = path.read_text(encoding="utf-8")
            data = json.loads(text)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Could not read legacy query file %s: %s", path.name, exc)
            continue

        url = determine_query_url(collection, path.name, data, api_base=api_base)
        if url is None:
            continue

        target = collection_dir / canonical_url_to_filename(url)
        if target.exists():
            logger.debug("Migration target %s already exists; skipping", target.name)
            continue

        try:
            write_json_atomic(target, data)
            path.unlink()
        except OSError as exc:
            logger.warning("Failed to move %s: %s", path.name, exc)
            continue
        logger.debug("Moved query file %s -> %s", path.name, target.name)
        moved += 1

    if moved:
        logger.debug("Moved %d query files into %s", moved, collection)
    return moved
