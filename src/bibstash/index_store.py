"""Per-collection index files: load, save and reconcile with the file tree.

The index (``<collection>/index.json``) maps canonical URLs to::

    {"$ref": "./<encoded-url>.json", "lastModified": "<ISO-8601>", "contentHash": "<16 hex>"}

It is a derived cache: the files on disk are ground truth, and
:func:`reconcile_with_filesystem` folds them back in on every pass.

Loading accepts every shape the index has had over the years, tried in a
fixed order, each validated on its own:

  1. requests wrapper   ``{"requests": {key: entry}}``
  2. flat               ``{key: entry}`` (the current shape)
  3. entity list        ``{"entityType": "works", "entities": ["W1", ...]}``
  4. query list / map   ``{"entityType": "works", "queries": [...] | {...}}``

Writes are atomic (write ``index.json.tmp``, rename).
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from bibstash.checksum import content_hash
from bibstash.errors import IndexIOError, SchemaMismatch
from bibstash.filename_codec import (
    determine_query_url,
    file_reference,
    filename_to_canonical_url,
    params_query_url,
    strip_suffix,
)
from bibstash.key_parser import (
    OPENALEX_API,
    KeyKind,
    detect_malformed,
    entity_url,
    normalize_for_dedup,
    prefix_for,
    try_canonicalize,
)
from bibstash.paths import INDEX_FILENAME

logger = logging.getLogger(__name__)

ENTRY_FIELDS = frozenset({"$ref", "lastModified", "contentHash", "type"})


@dataclass
class IndexEntry:
    """Change-detection metadata for one canonical URL."""

    last_modified: str | None = None
    content_hash: str | None = None

    def to_json(self, url: str, now: str) -> dict[str, str]:
        return {
            "$ref": file_reference(url),
            "lastModified": self.last_modified or now,
            "contentHash": self.content_hash or "",
        }


CollectionIndex = dict[str, IndexEntry]


def now_iso() -> str:
    """Current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def mtime_iso(path: Path) -> str:
    """A file's modification time as a UTC ISO timestamp."""
    return datetime.fromtimestamp(path.stat().st_mtime, UTC).isoformat()


def _parse_ts(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def is_later(a: str | None, b: str | None) -> bool:
    """True if timestamp *a* is strictly later than *b* (a missing *b* loses)."""
    if not a:
        return False
    if not b:
        return True
    ta, tb = _parse_ts(a), _parse_ts(b)
    if ta is None or tb is None:
        return a > b
    return ta > tb


def latest(a: str | None, b: str | None) -> str | None:
    """The later of two timestamps."""
    return a if is_later(a, b) else (b or a)


def merge_entry(existing: IndexEntry | None, incoming: IndexEntry) -> IndexEntry:
    """Resolve two entries for the same canonical URL.

    The entry with the more recent ``last_modified`` wins; if only one
    side has a timestamp, that side wins; otherwise the first one stays.
    """
    if existing is None:
        return incoming
    if is_later(incoming.last_modified, existing.last_modified):
        return incoming
    return existing


def index_key(raw: str, *, api_base: str = OPENALEX_API) -> str:
    """The key an entry is stored under.

    Parseable keys collapse to their dedup-normalized canonical URL.
    Corrupted or unparseable keys are kept verbatim so the seeder can
    repair or drop them.
    """
    if detect_malformed(raw):
        return raw
    parsed = try_canonicalize(raw, api_base=api_base)
    if parsed is None:
        return raw
    return normalize_for_dedup(parsed.canonical_url)


# ---------------------------------------------------------------------------
# Schema variants
# ---------------------------------------------------------------------------


def _entry_from(obj: dict[str, Any]) -> IndexEntry:
    return IndexEntry(
        last_modified=obj.get("lastModified") or None,
        content_hash=obj.get("contentHash") or None,
    )


def _is_entry(obj: Any) -> bool:
    if not isinstance(obj, dict) or not set(obj) <= ENTRY_FIELDS:
        return False
    return all(isinstance(obj[f], str) for f in obj if f != "type")


def _collect(pairs, api_base: str) -> CollectionIndex:
    index: CollectionIndex = {}
    for raw_key, entry in pairs:
        key = index_key(raw_key, api_base=api_base)
        if key in index:
            logger.debug("Merging duplicate index key %s (from %s)", key, raw_key)
        index[key] = merge_entry(index.get(key), entry)
    return index


def _load_requests_wrapper(data: Any, collection: str, api_base: str) -> CollectionIndex | None:
    if not isinstance(data, dict) or not isinstance(data.get("requests"), dict):
        return None
    requests = data["requests"]
    if not all(_is_entry(v) for v in requests.values()):
        return None
    return _collect(((k, _entry_from(v)) for k, v in requests.items()), api_base)


def _load_flat(data: Any, collection: str, api_base: str) -> CollectionIndex | None:
    if not isinstance(data, dict) or not all(_is_entry(v) for v in data.values()):
        return None
    return _collect(((k, _entry_from(v)) for k, v in data.items()), api_base)


def _load_entity_list(data: Any, collection: str, api_base: str) -> CollectionIndex | None:
    if not isinstance(data, dict):
        return None
    entity_type = data.get("entityType")
    entities = data.get("entities")
    if not isinstance(entity_type, str) or not isinstance(entities, list):
        return None
    if not all(isinstance(e, str) for e in entities):
        return None

    prefix = prefix_for(entity_type)
    stamp = now_iso()
    pairs = []
    for entity_id in entities:
        full_id = entity_id if entity_id.startswith(prefix) else prefix + entity_id
        pairs.append((entity_url(entity_type, full_id, api_base=api_base), IndexEntry(stamp, "")))
    return _collect(pairs, api_base)


def _query_definition_url(query: Any, collection: str, api_base: str) -> str | None:
    if not isinstance(query, dict):
        return None
    params = query.get("params")
    if isinstance(params, dict):
        return params_query_url(collection, params, api_base=api_base)
    url = query.get("url")
    if isinstance(url, str) and url.startswith(api_base + "/"):
        return url
    return None


def _load_query_list(data: Any, collection: str, api_base: str) -> CollectionIndex | None:
    if not isinstance(data, dict):
        return None
    queries = data.get("queries")
    entity_type = data.get("entityType", collection or "works")
    if not isinstance(entity_type, str):
        return None

    pairs = []
    if isinstance(queries, list):
        for item in queries:
            if not isinstance(item, dict):
                return None
            url = _query_definition_url(item.get("query"), entity_type, api_base)
            if url:
                pairs.append((url, _entry_from(item)))
    elif isinstance(queries, dict):
        for item in queries.values():
            if not isinstance(item, dict):
                return None
            url = _query_definition_url(item, entity_type, api_base)
            if url:
                pairs.append((url, _entry_from(item)))
    else:
        return None
    return _collect(pairs, api_base)


SchemaLoader = Callable[[Any, str, str], CollectionIndex | None]

SCHEMA_VARIANTS: tuple[tuple[str, SchemaLoader], ...] = (
    ("requests-wrapper", _load_requests_wrapper),
    ("flat", _load_flat),
    ("entity-list", _load_entity_list),
    ("query-list", _load_query_list),
)


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load(collection_dir: Path, *, api_base: str = OPENALEX_API) -> CollectionIndex:
    """Load ``<collection_dir>/index.json`` in whichever schema it uses.

    Returns an empty index when the file is missing or matches no known
    schema; a fresh collection is a normal starting state.

    Raises:
        IndexIOError: If the file exists but cannot be read.
    """
    path = collection_dir / INDEX_FILENAME
    collection = collection_dir.name
    api_base = api_base.rstrip("/")
    if not path.exists():
        logger.debug("No index for %s yet; starting empty", collection)
        return {}

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise IndexIOError(str(path), str(exc)) from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("%s", SchemaMismatch(str(path), f"invalid JSON: {exc}"))
        return {}

    for name, loader in SCHEMA_VARIANTS:
        index = loader(data, collection, api_base)
        if index is not None:
            logger.debug("Loaded %s index for %s: %d entries", name, collection, len(index))
            return index

    logger.warning("%s", SchemaMismatch(str(path)))
    return {}


def serialize(index: CollectionIndex, now: str | None = None) -> dict[str, dict[str, str]]:
    """The on-disk flat form of an index, keys sorted."""
    now = now or now_iso()
    return {url: index[url].to_json(url, now) for url in sorted(index)}


def save(collection_dir: Path, index: CollectionIndex) -> Path:
    """Write the index atomically as a flat canonical-URL map.

    Raises:
        IndexIOError: If the file cannot be written; the previous index
            file is left untouched.
    """
    path = collection_dir / INDEX_FILENAME
    tmp = path.with_suffix(".json.tmp")
    text = json.dumps(serialize(index), indent=2, ensure_ascii=False) + "\n"
    try:
        collection_dir.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise IndexIOError(str(path), str(exc)) from exc
    logger.debug("Saved index for %s: %d entries", collection_dir.name, len(index))
    return path


# ---------------------------------------------------------------------------
# Reconciliation with the file tree
# ---------------------------------------------------------------------------


def is_query_payload(data: Any) -> bool:
    """Query results are a bare list or an object with a ``results`` list."""
    return isinstance(data, list) or (
        isinstance(data, dict) and isinstance(data.get("results"), list)
    )


def resource_files(collection_dir: Path) -> list[Path]:
    """Resource JSON files in a collection directory (index excluded), sorted."""
    if not collection_dir.is_dir():
        return []
    return sorted(
        p
        for p in collection_dir.iterdir()
        if p.is_file() and p.suffix == ".json" and p.name != INDEX_FILENAME
    )


def _fold(index: CollectionIndex, key: str, mtime: str, digest: str) -> None:
    existing = index.get(key)
    if existing is None:
        index[key] = IndexEntry(mtime, digest)
        return
    existing.last_modified = latest(mtime, existing.last_modified)
    existing.content_hash = digest


def reconcile_with_filesystem(
    collection_dir: Path,
    index: CollectionIndex,
    *,
    api_base: str = OPENALEX_API,
) -> CollectionIndex:
    """Fold the files actually on disk into *index*.

    Files with a corrupted name are deleted. Every other resource file is
    hashed, classified as entity or query result by its shape, and
    merged into the entry for its canonical URL. A query file whose hash
    matches another entry is a duplicate and is skipped.

    Returns a new index; *index* is not modified.
    """
    collection = collection_dir.name
    api_base = api_base.rstrip("/")
    result: CollectionIndex = {
        k: IndexEntry(v.last_modified, v.content_hash) for k, v in index.items()
    }

    for path in resource_files(collection_dir):
        stem = strip_suffix(path.name)

        if detect_malformed(stem):
            logger.warning("Removing malformed file %s/%s", collection, path.name)
            try:
                path.unlink()
            except OSError as exc:
                logger.error("Failed to remove malformed file %s: %s", path, exc)
            continue

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            mtime = mtime_iso(path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Skipping unreadable file %s/%s: %s", collection, path.name, exc)
            continue
        digest = content_hash(data)

        if is_query_payload(data):
            url = determine_query_url(collection, path.name, data, api_base=api_base)
            if url is None:
                logger.warning("Could not determine canonical URL for query file %s", path.name)
                continue
            key = index_key(url, api_base=api_base)
            duplicate = next(
                (k for k, e in result.items() if k != key and e.content_hash == digest),
                None,
            )
            if duplicate is not None:
                logger.debug("Skipping duplicate query %s (same content as %s)", key, duplicate)
                continue
        else:
            url = filename_to_canonical_url(path.name, collection, api_base=api_base)
            key = index_key(url, api_base=api_base)
            parsed = try_canonicalize(key, api_base=api_base)
            if parsed is not None and parsed.collection != collection:
                logger.warning(
                    "Skipping %s/%s: it names a %s record", collection, path.name, parsed.collection
                )
                continue

        _fold(result, key, mtime, digest)

    deduped = deduplicate_prefixes(result, collection, api_base=api_base)
    logger.debug("Reconciled %s index: %d entries", collection, len(deduped))
    return deduped


def deduplicate_prefixes(
    index: CollectionIndex,
    collection: str,
    *,
    api_base: str = OPENALEX_API,
) -> CollectionIndex:
    """Drop unprefixed entity entries whose prefixed twin is also indexed.

    ``.../works/2741809807`` goes when ``.../works/W2741809807`` exists.
    """
    prefix = prefix_for(collection)
    if not prefix:
        return dict(index)

    drop: set[str] = set()
    for key in index:
        parsed = try_canonicalize(key, api_base=api_base)
        if parsed is None or parsed.kind is not KeyKind.ENTITY or parsed.collection != collection:
            continue
        identifier = parsed.identifier or ""
        if identifier.startswith(prefix):
            continue
        prefixed = entity_url(collection, prefix + identifier, api_base=api_base)
        if prefixed in index:
            logger.debug("Removing duplicate unprefixed entry %s (keeping %s)", key, prefixed)
            drop.add(key)

    return {k: v for k, v in index.items() if k not in drop}
