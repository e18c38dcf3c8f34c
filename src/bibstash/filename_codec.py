"""Canonical URL <-> resource filename mapping.

New filenames are the full canonical URL, percent-encoded with no safe
characters, plus ``.json``::

    https://api.openalex.org/works/W1  ->  https%3A%2F%2Fapi.openalex.org%2Fworks%2FW1.json

``quote(url, safe="")`` already escapes ``! ' ( ) *`` (which
``encodeURIComponent``-style encoders leave alone), so every character
outside ``A-Za-z0-9_.-~`` is escaped and the mapping is a bijection.

Decoding also understands two generations of older names:

- the colon/hyphen substitution scheme
  (``https-::api.openalex.org:works:W1`` -> ``https://api.openalex.org/works/W1``)
- bare identifiers (``W1.json``, or ``1.json`` missing its prefix)

Query files written before URL-based naming used base64url- or
hex-encoded JSON parameter objects; :func:`determine_query_url` handles
those and falls back to the ``meta.request_url`` recorded in the payload.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any
from urllib.parse import quote, unquote, urlencode

from bibstash.key_parser import OPENALEX_API, entity_url, prefix_for

logger = logging.getLogger(__name__)

JSON_SUFFIX = ".json"
LEGACY_PREFIX = "https-:"

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def canonical_url_to_filename(url: str) -> str:
    """Filename (with ``.json``) for a canonical URL."""
    return quote(url, safe="") + JSON_SUFFIX


def file_reference(url: str) -> str:
    """Relative ``$ref`` for a canonical URL, as stored in index files."""
    return "./" + canonical_url_to_filename(url)


def strip_suffix(filename: str) -> str:
    """Drop a trailing ``.json``."""
    if filename.endswith(JSON_SUFFIX):
        return filename[: -len(JSON_SUFFIX)]
    return filename


def decode_legacy_filename(stem: str) -> str | None:
    """Decode the old colon/hyphen substitution scheme, or None if *stem* isn't one."""
    if not stem.startswith(LEGACY_PREFIX):
        return None
    rest = stem[len(LEGACY_PREFIX):]
    rest = rest.replace(":", "/").replace("-", "=").replace("%22", '"')
    return "https://" + rest.lstrip("/")


def filename_to_canonical_url(
    filename: str,
    collection: str,
    *,
    api_base: str = OPENALEX_API,
) -> str:
    """Canonical URL for a resource filename (``.json`` optional).

    Legacy substitution names are translated first; otherwise the name is
    percent-decoded. A name that does not decode to a URL is taken to be
    a bare identifier of *collection*, with its prefix restored if missing.
    """
    stem = strip_suffix(filename)

    legacy = decode_legacy_filename(stem)
    if legacy is not None:
        logger.debug("Decoded legacy filename %s -> %s", filename, legacy)
        return legacy

    decoded = unquote(stem)
    if decoded.startswith("https://"):
        return decoded

    prefix = prefix_for(collection)
    identifier = decoded if decoded.startswith(prefix) else prefix + decoded
    return entity_url(collection, identifier, api_base=api_base.rstrip("/"))


def _params_to_query(params: dict[str, Any]) -> str:
    flat = {}
    for key, value in params.items():
        if isinstance(value, list):
            flat[key] = ",".join(str(v) for v in value)
        else:
            flat[key] = str(value)
    return urlencode(flat)


def params_query_url(
    collection: str,
    params: dict[str, Any],
    *,
    api_base: str = OPENALEX_API,
) -> str:
    """Query URL rebuilt from a parameter mapping (list values comma-joined)."""
    return f"{api_base.rstrip('/')}/{collection}?{_params_to_query(params)}"


def _decode_params_blob(stem: str) -> dict[str, Any] | None:
    """Decode a base64url or hex blob holding a JSON object of query params."""
    candidates: list[bytes] = []
    if _HEX_RE.match(stem) and len(stem) % 2 == 0:
        candidates.append(binascii.unhexlify(stem))
    try:
        candidates.append(base64.urlsafe_b64decode(stem + "=" * (-len(stem) % 4)))
    except (binascii.Error, ValueError):
        pass

    for blob in candidates:
        try:
            params = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            continue
        if isinstance(params, dict):
            return params
    return None


def determine_query_url(
    collection: str,
    filename: str,
    payload: Any = None,
    *,
    api_base: str = OPENALEX_API,
) -> str | None:
    """Recover the canonical URL of a query-result file.

    Tries, in order: percent-decoding, the legacy substitution scheme,
    base64url/hex JSON parameter blobs, and ``payload["meta"]["request_url"]``.

    Returns:
        The URL, or None if none of the strategies applies.
    """
    api_base = api_base.rstrip("/")
    stem = strip_suffix(filename)

    decoded = unquote(stem)
    if decoded.startswith(api_base + "/"):
        return decoded

    legacy = decode_legacy_filename(stem)
    if legacy is not None:
        return legacy

    params = _decode_params_blob(stem)
    if params is not None:
        logger.debug("Decoded parameter blob filename %s", filename)
        return params_query_url(collection, params, api_base=api_base)

    if isinstance(payload, dict):
        meta = payload.get("meta")
        if isinstance(meta, dict) and isinstance(meta.get("request_url"), str):
            return meta["request_url"]

    logger.warning("Cannot reconstruct query URL from filename %s", filename)
    return None
