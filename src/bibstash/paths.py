"""Canonical directory names for Bibstash.

Layout:
  ~/.bibstash/            state_dir()   config.yaml, logs
  <data_root>/            the static cache served to clients
    index.json            root index
    <collection>/index.json
    <collection>/<encoded-canonical-url>.json
"""

from __future__ import annotations

from pathlib import Path

DOT_DIR = ".bibstash"
INDEX_FILENAME = "index.json"
DEFAULT_DATA_ROOT = Path("public") / "data" / "openalex"


def state_dir() -> Path:
    """Return ~/.bibstash/ (config, logs)."""
    return Path.home() / DOT_DIR


def collection_dir(data_root: Path, collection: str) -> Path:
    """Return <data_root>/<collection>/."""
    return data_root / collection


def root_index_path(data_root: Path) -> Path:
    """Return <data_root>/index.json."""
    return data_root / INDEX_FILENAME
