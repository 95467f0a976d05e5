"""
Canonical payload hashing.

Two payloads with the same field values hash identically regardless of
key order, which is what lets the sync ledger recognise an echo written
by the other side.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def stable_json(value: Any) -> str:
    """Serialize a value with sorted keys and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def canonical_hash(fields: dict[str, Any]) -> str:
    """
    Return the hex SHA-256 digest of the canonical form of ``fields``.

    Args:
        fields: Field values that were compared or written, keyed by
                local field key

    Returns:
        64-character lowercase hex digest
    """
    return hashlib.sha256(stable_json(fields).encode("utf-8")).hexdigest()
