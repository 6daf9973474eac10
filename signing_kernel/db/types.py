"""
Module: signing_kernel.db.types
Responsibility: Column types shared by every model: UTC timestamps, JSON
    documents and hash strings.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - All persisted timestamps are UTC.  UTCDateTime rejects naive datetimes
      and stores "YYYY-MM-DDTHH:MM:SS.ffffffZ", a fixed-width RFC 3339 form
      whose string order is its time order (due-date indices rely on this).
    - JSON documents are stored with sorted keys so equal documents have
      equal bytes.

Failure modes:
    - ValueError on a naive datetime bound to a UTCDateTime column.
"""

import json
from typing import Annotated

from sqlalchemy import JSON, String, Text
from sqlalchemy.types import TypeDecorator

from signing_kernel.utils.rfc3339 import format_utc, parse_utc


class UTCDateTime(TypeDecorator):
    """
    Aware UTC datetime stored as a fixed-width RFC 3339 string.

    Contract:
        Binds aware datetimes only; loads aware UTC datetimes.
    Guarantees:
        - Identical behaviour on SQLite and PostgreSQL.
        - String comparison in SQL equals chronological comparison.
    """

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            return format_utc(parse_utc(value))
        return format_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return parse_utc(value)


class JSONDocument(TypeDecorator):
    """JSON column with deterministic (sorted-key) serialization."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import JSONB

            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return value
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            return json.loads(value)
        return value


# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings (user ids, node ids, workflow ids)
Identifier = Annotated[str, String(255)]

# Long text for reasons and expressions
LongText = Annotated[str, String(4000)]
