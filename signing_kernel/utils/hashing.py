"""
Deterministic hashing utilities.

All hashing in the signing kernel must be deterministic and reproducible.
This module provides the canonical hashing functions used throughout:
audit chain links, evidence digests, definition checksums and authorization
cache keys.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from signing_kernel.utils.rfc3339 import format_utc

GENESIS_PREFIX = "GENESIS|"


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, datetime):
        return format_utc(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, tuple):
        return list(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Timestamps as RFC 3339 UTC, UUIDs and enums as strings

    Args:
        data: Data to canonicalize.

    Returns:
        Canonical JSON string.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_serializer,
    )


def sha256_hex(data: bytes | str) -> str:
    """Hex-encoded SHA-256 of raw bytes (str is UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_payload(payload: dict | list) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    return sha256_hex(canonicalize_json(payload))


def genesis_hash(chain_key: str) -> str:
    """The recorded root hash of an audit chain."""
    return sha256_hex(GENESIS_PREFIX + chain_key)


def hash_audit_event(prev_hash: str, event_body: dict) -> str:
    """
    Compute the hash of an audit event.

    hash = SHA-256(prev_hash || canonical_json(event_without_hash))

    Args:
        prev_hash: Hash of the previous event, or the chain's genesis hash.
        event_body: Every event field except ``hash``.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return sha256_hex(prev_hash + canonicalize_json(event_body))


def json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so the value stores and hashes identically."""
    return json.loads(canonicalize_json(data))
