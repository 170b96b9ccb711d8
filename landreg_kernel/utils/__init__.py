"""Utility modules for the land registry kernel."""

from landreg_kernel.utils.hashing import (
    HASH_ALGORITHM,
    canonical_timestamp,
    canonicalize_json,
    hash_audit_entry,
    hash_chain_link,
    hash_payload,
)

__all__ = [
    "HASH_ALGORITHM",
    "canonical_timestamp",
    "canonicalize_json",
    "hash_audit_entry",
    "hash_chain_link",
    "hash_payload",
]
