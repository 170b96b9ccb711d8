"""
Deterministic hashing utilities.

All hashing in the land registry kernel must be deterministic and
reproducible: an auditor recomputing a hash years later, on another machine,
from the stored columns alone must get the same digest. This module provides
the canonical functions used by the audit ledger and configuration loader.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

# Digest used for every audit hash. Changing it invalidates all stored chains.
HASH_ALGORITHM = "sha256"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def canonical_timestamp(value: datetime) -> str:
    """
    Render a timestamp in the single canonical form used for hashing.

    Naive datetimes are treated as UTC (some drivers drop the offset on
    read). Output always has microsecond precision and a ``Z`` suffix.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, datetime):
        return canonical_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        return list(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (datetime, UUID, sets)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def normalize_json(data: dict | None) -> dict | None:
    """
    Round-trip a mapping through canonical JSON.

    The result contains only plain JSON types, so hashing it before and after
    a trip through a JSON column yields the same digest.
    """
    if data is None:
        return None
    return json.loads(canonicalize_json(data))


def digest(text: str) -> str:
    """Hex digest of ``text`` with the configured algorithm."""
    return hashlib.new(HASH_ALGORITHM, text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    """
    Compute the digest of a payload's canonical JSON.

    Returns:
        Hex-encoded hash (64 characters for SHA-256).
    """
    return digest(canonicalize_json(payload))


def hash_audit_entry(fields: dict[str, Any], previous_hash: str | None) -> str:
    """
    Compute the content hash of an audit entry.

    The hash covers every business field of the entry plus the previous
    entry's content hash, so editing any stored field or re-pointing the
    entry at a different predecessor changes the digest.

    Args:
        fields: Business fields of the entry (no hashes, no archive flags).
        previous_hash: ``current_hash`` of the preceding entry for the same
            resource, or None for the first entry.

    Returns:
        Hex-encoded hash.
    """
    material = dict(fields)
    material["previous_hash"] = previous_hash or ""
    return hash_payload(material)


def hash_chain_link(current_hash: str, previous_chain_hash: str | None) -> str:
    """
    Compute the chain hash binding an entry to its position in the chain.

    The first entry's chain hash is its own content hash.
    """
    if not previous_chain_hash:
        return current_hash
    return digest(f"{previous_chain_hash}:{current_hash}")
