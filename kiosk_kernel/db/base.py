"""
Module: kiosk_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, UTC-aware timestamps, the TrackedBase
    mixin for audit timestamps and the Versioned mixin for optimistic locking.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, domain/, or outer layers.

Invariants enforced:
    - UUID primary keys: Every model inherits a uuid4-generated primary key.
    - Integer money: amounts are plain integers in the smallest currency unit;
      int maps to BigInteger.  NEVER use float for monetary amounts.
    - UTC timestamps: datetime columns always round-trip as timezone-aware
      UTC values, including on SQLite which stores naive text.
    - Optimistic concurrency: Versioned rows carry a version counter that
      SQLAlchemy checks on every UPDATE (version_id_col); a stale write
      raises StaleDataError instead of silently overwriting.

Failure modes:
    - StaleDataError on UPDATE of a Versioned row modified concurrently.

Audit relevance:
    TrackedBase.created_at and updated_at are set from the injected Clock by
    the repository's flush listener, so recorded times are deterministic in
    tests and replay.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime normalized to UTC.

    Contract:
        Binds aware datetimes converted to UTC; naive datetimes are rejected.
        Results always come back with tzinfo=UTC, whatever the backend
        returned (SQLite drops offsets).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime cannot be stored; attach a timezone")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to UTCDateTime -- always timezone-aware.
        - int maps to BigInteger -- smallest-unit money never overflows.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with audit timestamps.

    Contract:
        created_at and updated_at are populated by the repository's
        before_flush listener from the injected Clock, never by the database
        server, so they are readable on detached instances.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )


class Versioned:
    """
    Mixin adding an optimistic-lock version column.

    Contract:
        Every ORM flush that UPDATEs the row adds ``WHERE version = :old``
        and increments the counter.  Zero matched rows raise StaleDataError,
        which the repository converts into a transaction retry.
    """

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    @declared_attr.directive
    def __mapper_args__(cls) -> dict[str, Any]:
        return {"version_id_col": cls.__table__.c.version}


# Re-export UUID for convenience
UUID = PyUUID
