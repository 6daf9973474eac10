"""Database layer - engine, base classes, types, and immutability listeners."""

from signing_kernel.db.base import Base, UUIDString
from signing_kernel.db.engine import create_tables, get_engine, get_session
from signing_kernel.db.types import JSONDocument, PayloadHash, UTCDateTime

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "UUIDString",
    "UTCDateTime",
    "JSONDocument",
    "PayloadHash",
]
