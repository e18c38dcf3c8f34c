"""Bibstash configuration: loading and validation of config.yaml.

The config file lives in ~/.bibstash/ unless a path is given on the
command line. It says where the static cache lives, which upstream API
to mirror, which collections to process, and how politely to fetch.

If no config exists, create_default() writes a commented starter file.
Environment variables override the file: OPENALEX_API_KEY,
OPENALEX_MAILTO and BIBSTASH_DATA_ROOT.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from bibstash.checksum import sha256_bytes
from bibstash.errors import ConfigError
from bibstash.http import DEFAULT_MAX_RETRIES, DEFAULT_MIN_INTERVAL, DEFAULT_TIMEOUT
from bibstash.key_parser import COLLECTIONS, OPENALEX_API
from bibstash.paths import DEFAULT_DATA_ROOT, state_dir
from bibstash.seeder import MAX_REDIRECTS

CONFIG_FILENAME = "config.yaml"


@dataclass
class CacheConfig:
    """Parsed config.yaml."""

    data_root: Path = field(default_factory=lambda: DEFAULT_DATA_ROOT)
    api_base: str = OPENALEX_API
    collections: list[str] = field(default_factory=lambda: list(COLLECTIONS))
    mailto: str = ""
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    max_redirects: int = MAX_REDIRECTS
    min_interval: float = DEFAULT_MIN_INTERVAL
    workers: int = 1
    log_file: Path | None = None
    sha256: str = ""  # checksum of the raw config file


_DEFAULT_CONFIG = """\
# Bibstash configuration
# Edit freely; command-line flags and environment variables take precedence.

# Directory holding the static cache (root index.json + one dir per collection).
# Relative paths are resolved against the current working directory.
# Can also be set via BIBSTASH_DATA_ROOT.
data_root: public/data/openalex

# Upstream API. The public host is derived by dropping the "api." prefix.
api_base: https://api.openalex.org

# Collections to reconcile and seed, in order.
collections:
  - works
  - authors
  - institutions
  - topics
  - sources
  - publishers
  - funders
  - concepts
  - autocomplete

# Polite-pool contact address and optional premium key.
# Can also be set via OPENALEX_MAILTO / OPENALEX_API_KEY.
# mailto: you@example.com
# api_key: ...

# Per-request timeout (seconds); an expired request is retried next pass.
timeout: 15

# Retries on HTTP 429/5xx and connection errors, with exponential backoff.
max_retries: 3

# Redirects followed by hand per entity fetch before giving up.
max_redirects: 10

# Minimum seconds between requests.
min_interval: 0.1

# Collections processed in parallel (each collection is locked on its own).
workers: 1

# Optional debug log file (rotated at 2 MB).
# log_file: ~/.bibstash/bibstash.log
"""


def config_path(base_dir: Path | None = None) -> Path:
    """Path to config.yaml (default: ~/.bibstash/config.yaml)."""
    return (base_dir or state_dir()) / CONFIG_FILENAME


def create_default(path: Path) -> Path:
    """Write a starter config.yaml if it doesn't exist. Returns the path."""
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(_DEFAULT_CONFIG, encoding="utf-8")
    return path


def _number(data: dict[str, Any], key: str, default: float, kind: type) -> Any:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    value = kind(value)
    if value < 0:
        raise ConfigError(f"'{key}' must not be negative, got {value}")
    return value


def _string(data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def load_config(path: Path | None = None) -> CacheConfig:
    """Load and validate config.yaml, then apply environment overrides.

    Returns defaults (plus overrides) if the file is missing.

    Raises:
        ConfigError: On invalid YAML or wrongly typed values.
    """
    p = path or config_path()
    if not p.exists():
        return _apply_env(CacheConfig())

    raw = p.read_text(encoding="utf-8")
    sha = sha256_bytes(raw.encode("utf-8"))

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"expected a YAML mapping in {p}, got {type(data).__name__}")

    collections = data.get("collections", list(COLLECTIONS))
    if not isinstance(collections, list) or not all(isinstance(c, str) for c in collections):
        raise ConfigError(
            "'collections' must be a list of names",
            hint=f"Known collections: {', '.join(COLLECTIONS)}.",
        )

    api_base = _string(data, "api_base", OPENALEX_API).rstrip("/")
    if not api_base.startswith(("https://", "http://")):
        raise ConfigError(f"'api_base' must be an http(s) URL, got {api_base!r}")

    log_file = data.get("log_file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError(f"'log_file' must be a path string, got {type(log_file).__name__}")

    workers = _number(data, "workers", 1, int)
    if workers < 1:
        raise ConfigError("'workers' must be at least 1")

    cfg = CacheConfig(
        data_root=Path(_string(data, "data_root", str(DEFAULT_DATA_ROOT))).expanduser(),
        api_base=api_base,
        collections=collections,
        mailto=_string(data, "mailto", ""),
        api_key=_string(data, "api_key", ""),
        timeout=_number(data, "timeout", DEFAULT_TIMEOUT, float),
        max_retries=_number(data, "max_retries", DEFAULT_MAX_RETRIES, int),
        max_redirects=_number(data, "max_redirects", MAX_REDIRECTS, int),
        min_interval=_number(data, "min_interval", DEFAULT_MIN_INTERVAL, float),
        workers=workers,
        log_file=Path(log_file).expanduser() if log_file else None,
        sha256=sha,
    )
    return _apply_env(cfg)


def _apply_env(cfg: CacheConfig) -> CacheConfig:
    if key := os.environ.get("OPENALEX_API_KEY"):
        cfg.api_key = key
    if mailto := os.environ.get("OPENALEX_MAILTO"):
        cfg.mailto = mailto
    if root := os.environ.get("BIBSTASH_DATA_ROOT"):
        cfg.data_root = Path(root).expanduser()
    return cfg
