"""Index key parsing and canonicalization.

Parses any of the key spellings found in years of index files into a
``ParsedKey`` with one canonical URL. Accepted forms, tried in order:

- **API URL**: ``https://api.openalex.org/works/W2741809807``,
  ``https://api.openalex.org/works?filter=doi:10.1/x``
- **public URL**: ``https://openalex.org/W2741809807``,
  ``https://openalex.org/authors/A5023888391``
- **relative query**: ``works?per_page=30&page=1``
- **relative path**: ``works/W2741809807``
- **bare identifier**: ``W2741809807`` (collection inferred from the prefix)

Also detects and repairs the corrupted keys left behind by old
double-encoding bugs, e.g.
``https://api.openalex.org/authors/Ahttps%2F%2F%2Fapi%2Eopenalex%2Eorg%2Fauthors%2FA5025875274``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import parse_qsl, unquote, urlsplit

from bibstash.errors import MalformedUnrecoverable, Unparseable

logger = logging.getLogger(__name__)

OPENALEX_API = "https://api.openalex.org"


class KeyKind(Enum):
    """Classification of a parsed key."""

    ENTITY = "entity"
    QUERY = "query"


# Collection -> identifier prefix. Autocomplete is query-only.
COLLECTION_PREFIXES: dict[str, str] = {
    "works": "W",
    "authors": "A",
    "institutions": "I",
    "topics": "T",
    "sources": "S",
    "publishers": "P",
    "funders": "F",
    "concepts": "C",
    "autocomplete": "",
}
COLLECTIONS: tuple[str, ...] = tuple(COLLECTION_PREFIXES)

_PREFIX_TO_COLLECTION = {p: c for c, p in COLLECTION_PREFIXES.items() if p}

_BARE_ID_RE = re.compile(r"^[A-Za-z]\d+$")
_COLLECTION_RE = re.compile(r"^[a-z][a-z_-]*$")
_BROKEN_SCHEME_RE = re.compile(r"^https:?/{2,}")

# Bound on progressive percent-decoding rounds
MAX_DECODE_ROUNDS = 5

# Escapes whose decoded form would change how a URL splits into parts
_QUERY_RESERVED_RE = re.compile(r"(%(?:25|26|2[Bb]|3[Dd]|23))")
_PATH_RESERVED_RE = re.compile(r"(%(?:25|26|2[Bb]|3[Dd]|23|2[Ff]|3[Ff]))")


@dataclass(frozen=True)
class ParsedKey:
    """Result of canonicalizing an index key."""

    kind: KeyKind
    collection: str
    canonical_url: str
    identifier: str | None = None
    query: str = ""  # raw query string, order preserved
    raw: str = field(default="", compare=False)

    @property
    def query_params(self) -> dict[str, str]:
        """Query parameters as a plain mapping (last value wins)."""
        return dict(parse_qsl(self.query, keep_blank_values=True))

    @property
    def is_entity(self) -> bool:
        return self.kind is KeyKind.ENTITY


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def prefix_for(collection: str) -> str:
    """Identifier prefix for a collection ('' if it has none)."""
    return COLLECTION_PREFIXES.get(collection, "")


def infer_collection(identifier: str) -> str | None:
    """Collection implied by an identifier's leading letter, or None."""
    if not identifier:
        return None
    return _PREFIX_TO_COLLECTION.get(identifier[0].upper())


def public_base(api_base: str = OPENALEX_API) -> str:
    """The public (non-API) base URL: ``https://api.x.org`` -> ``https://x.org``."""
    parts = urlsplit(api_base)
    host = parts.netloc
    if host.startswith("api."):
        host = host[len("api."):]
    return f"{parts.scheme}://{host}"


def entity_url(collection: str, identifier: str, *, api_base: str = OPENALEX_API) -> str:
    """Canonical URL of an entity."""
    return f"{api_base}/{collection}/{identifier}"


def query_url(
    collection: str,
    query: str,
    identifier: str | None = None,
    *,
    api_base: str = OPENALEX_API,
) -> str:
    """Canonical URL of a query; no trailing ``?`` when *query* is empty."""
    path = f"{api_base}/{collection}"
    if identifier:
        path += f"/{identifier}"
    return f"{path}?{query}" if query else path


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def canonicalize(raw: str, *, api_base: str = OPENALEX_API) -> ParsedKey:
    """Parse a key in any supported spelling into its canonical form.

    Args:
        raw: The key as found in an index file, a filename or user input.
        api_base: Base URL of the upstream API.

    Returns:
        A ``ParsedKey``. Canonicalizing its ``canonical_url`` again yields
        an equal ``ParsedKey``.

    Raises:
        Unparseable: If *raw* matches none of the known formats.

    Examples:
        >>> canonicalize("works/W123").canonical_url
        'https://api.openalex.org/works/W123'
        >>> canonicalize("A5023888391").collection
        'authors'
        >>> canonicalize("works?filter=is_oa:true").kind
        <KeyKind.QUERY: 'query'>
    """
    key = raw.strip() if raw else ""
    if not key:
        raise Unparseable(raw)

    api_base = api_base.rstrip("/")
    public = public_base(api_base)

    if key.startswith(api_base + "/"):
        parsed = _parse_api_url(key, api_base)
    elif key.startswith(public + "/"):
        parsed = _parse_public_url(key, public, api_base)
    elif "?" in key:
        parsed = _parse_relative_query(key, api_base)
    elif "/" in key:
        parsed = _parse_relative_path(key, api_base)
    else:
        parsed = _parse_bare_identifier(key, api_base)

    if parsed is None:
        raise Unparseable(raw)
    return parsed


def try_canonicalize(raw: str, *, api_base: str = OPENALEX_API) -> ParsedKey | None:
    """Like :func:`canonicalize` but returns None instead of raising."""
    try:
        return canonicalize(raw, api_base=api_base)
    except Unparseable:
        return None


def _decode_except(text: str, reserved: re.Pattern[str]) -> str:
    pieces = reserved.split(text)
    # odd positions are the captured reserved escapes
    return "".join(p.upper() if i % 2 else unquote(p) for i, p in enumerate(pieces))


def normalize_for_dedup(url: str) -> str:
    """Percent-decode *url* so differently-escaped spellings collapse to one key.

    Escapes that carry meaning stay encoded: ``%25 %26 %2B %3D %23``
    everywhere, plus ``%2F %3F`` in the path. The result names the same
    resource as the input, and normalizing it again changes nothing.
    """
    for _ in range(MAX_DECODE_ROUNDS):
        base, sep, query = url.partition("?")
        decoded = _decode_except(base, _PATH_RESERVED_RE) + sep + _decode_except(query, _QUERY_RESERVED_RE)
        if decoded == url:
            break
        url = decoded
    return url


def _segments(path: str) -> list[str]:
    return [p for p in path.split("/") if p]


def _parse_api_url(key: str, api_base: str) -> ParsedKey | None:
    parts = urlsplit(key)
    segs = _segments(parts.path)
    query = parts.query

    if len(segs) == 1:
        collection = segs[0]
        if not _COLLECTION_RE.match(collection):
            return None
        return ParsedKey(
            kind=KeyKind.QUERY,
            collection=collection,
            canonical_url=query_url(collection, query, api_base=api_base),
            query=query,
            raw=key,
        )

    if len(segs) == 2:
        collection, identifier = segs
        if not _COLLECTION_RE.match(collection):
            return None
        if query:
            return ParsedKey(
                kind=KeyKind.QUERY,
                collection=collection,
                canonical_url=query_url(collection, query, identifier, api_base=api_base),
                identifier=identifier,
                query=query,
                raw=key,
            )
        return ParsedKey(
            kind=KeyKind.ENTITY,
            collection=collection,
            canonical_url=entity_url(collection, identifier, api_base=api_base),
            identifier=identifier,
            raw=key,
        )

    return None


def _parse_public_url(key: str, public: str, api_base: str) -> ParsedKey | None:
    segs = _segments(urlsplit(key).path)

    if len(segs) == 1:
        identifier = segs[0]
        if not _BARE_ID_RE.match(identifier):
            return None
        collection = infer_collection(identifier)
    elif len(segs) == 2:
        collection, identifier = segs
        if not _COLLECTION_RE.match(collection):
            return None
    else:
        return None

    if collection is None:
        return None
    return ParsedKey(
        kind=KeyKind.ENTITY,
        collection=collection,
        canonical_url=entity_url(collection, identifier, api_base=api_base),
        identifier=identifier,
        raw=key,
    )


def _parse_relative_query(key: str, api_base: str) -> ParsedKey | None:
    path, _, query = key.partition("?")
    segs = _segments(path)
    if not segs or len(segs) > 2 or not _COLLECTION_RE.match(segs[0]):
        return None
    collection = segs[0]
    identifier = segs[1] if len(segs) == 2 else None
    return ParsedKey(
        kind=KeyKind.QUERY,
        collection=collection,
        canonical_url=query_url(collection, query, identifier, api_base=api_base),
        identifier=identifier,
        query=query,
        raw=key,
    )


def _parse_relative_path(key: str, api_base: str) -> ParsedKey | None:
    parts = key.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    collection, identifier = parts
    if not _COLLECTION_RE.match(collection):
        return None
    return ParsedKey(
        kind=KeyKind.ENTITY,
        collection=collection,
        canonical_url=entity_url(collection, identifier, api_base=api_base),
        identifier=identifier,
        raw=key,
    )


def _parse_bare_identifier(key: str, api_base: str) -> ParsedKey | None:
    if not _BARE_ID_RE.match(key):
        return None
    collection = infer_collection(key)
    if collection is None:
        return None
    identifier = key[0].upper() + key[1:]
    return ParsedKey(
        kind=KeyKind.ENTITY,
        collection=collection,
        canonical_url=entity_url(collection, identifier, api_base=api_base),
        identifier=identifier,
        raw=key,
    )


# ---------------------------------------------------------------------------
# Corruption detection and repair
# ---------------------------------------------------------------------------

_TRIPLE_SLASH = "%2F%2F%2F"
_REENCODED_SCHEME = "https%252F%252F"
_ENCODED_URL_ID_RE = re.compile(r"^[A-Z]https%2F%2F")


def detect_malformed(key: str) -> bool:
    """True if *key* (or a filename stem) carries a known corruption signature.

    Signatures:
      - triple-encoded path separators (``%2F%2F%2F``)
      - a percent-re-encoded ``https://`` fragment (``https%252F%252F``)
      - an identifier that itself begins with an encoded URL (``Ahttps%2F%2F``)
    """
    return (
        _TRIPLE_SLASH in key
        or _REENCODED_SCHEME in key
        or bool(_ENCODED_URL_ID_RE.match(key))
    )


def _fix_scheme(url: str) -> str:
    return _BROKEN_SCHEME_RE.sub("https://", url, count=1)


def repair_malformed(key: str, *, api_base: str = OPENALEX_API) -> str:
    """Best-effort repair of a corrupted key.

    Tries, in order:
      1. extract and decode an encoded URL embedded in an entity path;
      2. strip a one-letter prefix and decode an encoded URL behind it;
      3. progressive percent-decoding, at most ``MAX_DECODE_ROUNDS`` rounds,
         stopping once the result looks like a URL or a bare identifier.

    Returns *key* unchanged when nothing applies. Repairing a repaired
    key is a no-op.
    """
    api_base = api_base.rstrip("/")

    embedded = re.match(rf"^{re.escape(api_base)}/\w+/[A-Z](https%2F%2F.+)$", key)
    if embedded:
        repaired = _fix_scheme(unquote(embedded.group(1)))
        logger.debug("Extracted embedded URL from malformed key %s -> %s", key, repaired)
        return repaired

    if _ENCODED_URL_ID_RE.match(key):
        repaired = _fix_scheme(unquote(key[1:]))
        logger.debug("Decoded malformed identifier %s -> %s", key, repaired)
        return repaired

    if key.startswith("https://") or _BARE_ID_RE.match(key):
        return key

    current = key
    for _ in range(MAX_DECODE_ROUNDS):
        decoded = unquote(current)
        if decoded == current:
            break
        current = decoded
        if current.startswith("https://") or _BARE_ID_RE.match(current):
            break

    if current != key:
        logger.debug("Progressive decoding cleaned malformed key %s -> %s", key, current)
    return current


def needs_repair(key: str, *, api_base: str = OPENALEX_API) -> bool:
    """True if *key* is corrupted or cannot be parsed as it stands."""
    return detect_malformed(key) or try_canonicalize(key, api_base=api_base) is None


def validate_repair(key: str, collection: str, *, api_base: str = OPENALEX_API) -> ParsedKey:
    """Repair *key* and accept the result only if it belongs to *collection*.

    Raises:
        MalformedUnrecoverable: If repair changes nothing, the repaired key
            does not parse, or it resolves to another collection.
    """
    repaired = repair_malformed(key, api_base=api_base)
    if repaired == key:
        raise MalformedUnrecoverable(key, repaired, collection)
    parsed = try_canonicalize(repaired, api_base=api_base)
    if parsed is None or parsed.collection != collection:
        raise MalformedUnrecoverable(key, repaired, collection)
    return parsed
