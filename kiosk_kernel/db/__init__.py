"""Database layer - engine, session factory, base classes and column types."""

from kiosk_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString, Versioned
from kiosk_kernel.db.engine import create_tables, get_engine, get_session_factory, init_engine_from_url

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session_factory",
    "create_tables",
    "Base",
    "TrackedBase",
    "Versioned",
    "UUIDString",
    "UTCDateTime",
    "UUID",
]
