"""
Deterministic hashing for change detection.

Sync decides whether an upstream record actually changed by comparing
content fingerprints rather than timestamps: an unchanged payload must leave
the stored record untouched apart from cache metadata.

Examples:
    >>> compute_hash("Pa", "atm") == compute_hash("Pa", "atm")
    True
    >>> content_hash({"b": 1, "a": 2}) == content_hash({"a": 2, "b": 1})
    True

Tags:
    hashing, idempotency, change-detection, refspine
"""

import hashlib
import json
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Concatenates string representations with '|' and takes SHA-256.
    Order-dependent: (a, b) != (b, a).

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def canonical_json(value: Any) -> str:
    """Serialize to JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def content_hash(value: Any, length: int = 64) -> str:
    """
    SHA-256 fingerprint of a JSON-compatible value.

    Key order does not matter; list order does.
    """
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()[:length]


__all__ = ["compute_hash", "canonical_json", "content_hash"]
