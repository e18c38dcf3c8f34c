"""Stable content hashing for change detection and duplicate detection."""

import hashlib
import json
from typing import Any

HASH_LENGTH = 16  # hex chars kept from the SHA-256 digest

# Top-level fields that change between otherwise identical responses
VOLATILE_FIELDS = frozenset({"meta"})


def sha256_bytes(data: bytes) -> str:
    """Compute SHA256 hex digest of bytes.

    Args:
        data: Raw bytes to hash.

    Returns:
        Lowercase hex digest string (64 chars).
    """
    return hashlib.sha256(data).hexdigest()


def content_hash(data: Any) -> str:
    """Short stable digest of a JSON document's semantic content.

    Volatile top-level fields (``meta``: request timing, counts) are
    dropped and keys are sorted at every level, so two payloads that
    differ only in key order or metadata hash the same.

    Args:
        data: Parsed JSON value.

    Returns:
        First 16 hex chars of the SHA-256 of the canonical serialization.
    """
    if isinstance(data, dict):
        data = {k: v for k, v in data.items() if k not in VOLATILE_FIELDS}
    text = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return sha256_bytes(text.encode("utf-8"))[:HASH_LENGTH]
