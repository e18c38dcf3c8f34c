"""Top-level ``index.json`` referencing every collection index.

The root index is a JSON Schema document whose ``allOf`` lists
``{"$ref": "./<collection>/index.json"}`` for each collection directory
that has an index. It is only rewritten when its content (everything but
``lastModified``) changes, so a no-op run leaves the file and its
timestamp alone.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from bibstash.files import write_text_atomic
from bibstash.index_store import now_iso
from bibstash.key_parser import OPENALEX_API
from bibstash.paths import INDEX_FILENAME, root_index_path

logger = logging.getLogger(__name__)

ROOT_INDEX_VERSION = "1.0.0"


def discover_collections(data_root: Path) -> list[str]:
    """Sorted names of subdirectories that contain an ``index.json``."""
    if not data_root.is_dir():
        return []
    return sorted(
        p.name for p in data_root.iterdir() if p.is_dir() and (p / INDEX_FILENAME).is_file()
    )


def root_index_content(collections: list[str], *, api_base: str = OPENALEX_API) -> dict[str, Any]:
    """Root index document without its ``lastModified`` field."""
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "$id": f"{api_base.rstrip('/')}/schema/index",
        "title": "OpenAlex Static Data Index",
        "description": "Root index merging all collection indexes via JSON Schema references",
        "type": "object",
        "version": ROOT_INDEX_VERSION,
        "allOf": [{"$ref": f"./{c}/{INDEX_FILENAME}"} for c in collections],
    }


def _read_existing(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Existing root index %s is unreadable (%s); rebuilding", path, exc)
        return None
    return data if isinstance(data, dict) else None


def build_root_index(data_root: Path, *, api_base: str = OPENALEX_API) -> bool:
    """Write ``<data_root>/index.json`` if its content changed.

    Returns:
        True if the file was written, False if it was already up to date.
    """
    path = root_index_path(data_root)
    collections = discover_collections(data_root)
    content = root_index_content(collections, api_base=api_base)

    existing = _read_existing(path)
    if existing is not None:
        previous = {k: v for k, v in existing.items() if k != "lastModified"}
        if previous == content:
            logger.debug("Root index unchanged (%d collections); skipping write", len(collections))
            return False

    document = {**content, "lastModified": now_iso()}
    write_text_atomic(path, json.dumps(document, indent=2, ensure_ascii=False) + "\n")
    logger.info("Wrote root index with %d collections", len(collections))
    return True
