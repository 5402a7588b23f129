"""
Content hashing for change detection.

A content hash summarizes the business content of a record so that two
copies of the same row hash identically regardless of bookkeeping columns
(ids and audit timestamps) and key order.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

# Bookkeeping columns that never contribute to a content hash
DEFAULT_EXCLUDED_FIELDS = frozenset({"id", "created_at", "updated_at", "deleted_at"})

# Hex characters kept from the digest
HASH_LENGTH = 16


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal | UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        items = [_normalize(v) for v in value]
        return sorted(items, key=repr) if isinstance(value, set | frozenset) else items
    return value


def hashable_content(
    data: Mapping[str, Any],
    exclude_fields: Iterable[str] = (),
) -> dict[str, Any]:
    """
    Reduce a record to the fields that make up its content.

    Args:
        data: Record contents keyed by column name.
        exclude_fields: Extra fields to leave out.

    Returns:
        Normalized dictionary with bookkeeping and excluded fields removed.
    """
    excluded = DEFAULT_EXCLUDED_FIELDS | frozenset(exclude_fields)
    return {key: _normalize(value) for key, value in data.items() if key not in excluded}


def calculate_content_hash(
    data: Mapping[str, Any],
    algorithm: str = "sha256",
    exclude_fields: Iterable[str] = (),
) -> str:
    """
    Calculate the content hash of a record.

    Args:
        data: Record contents keyed by column name.
        algorithm: md5, sha1 or sha256.
        exclude_fields: Extra fields to leave out of the hash.

    Returns:
        Hash formatted as ``"<algorithm>_<16 hex chars>"``.

    Example:
        >>> calculate_content_hash({"id": 1, "name": "Main St"})
        'sha256_...'
    """
    payload = json.dumps(
        hashable_content(data, exclude_fields),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.new(algorithm, payload.encode("utf-8")).hexdigest()
    return f"{algorithm}_{digest[:HASH_LENGTH]}"


def changed_fields(
    source: Mapping[str, Any],
    destination: Mapping[str, Any],
    exclude_fields: Iterable[str] = (),
) -> tuple[str, ...]:
    """
    List the top-level fields whose values differ between two records.

    Only fields present in the source are compared.
    """
    left = hashable_content(source, exclude_fields)
    right = hashable_content(destination, exclude_fields)
    return tuple(sorted(key for key, value in left.items() if right.get(key) != value))


__all__ = [
    "DEFAULT_EXCLUDED_FIELDS",
    "HASH_LENGTH",
    "calculate_content_hash",
    "changed_fields",
    "hashable_content",
]
