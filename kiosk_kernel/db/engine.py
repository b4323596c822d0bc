"""
Module: kiosk_kernel.db.engine
Responsibility: Owns the process-wide SQLAlchemy engine and the session
    factory handed to the EntityRepository.  Table creation for tests and
    first boot lives here too.
Architecture position: Kernel > DB.  May import from db/base.py.
    MUST NOT import from services/, domain/, or outer layers
    (create_tables/drop_tables import the model registry lazily).

Invariants enforced:
    - PostgreSQL runs at REPEATABLE READ so a concurrent write to a row the
      transaction has read surfaces as a serialization failure (SQLSTATE
      40001) that the repository retries.
    - SQLite must be file-backed.  Its connections are shared across
      threads and wait ``sqlite_busy_timeout`` seconds on a lock.
    - Sessions keep attribute state after commit; DTOs are built from
      committed rows without lazy loads.

Failure modes:
    - ValueError for an in-memory SQLite URL.
    - RuntimeError from get_engine/get_session_factory before
      init_engine_from_url().
"""

import atexit
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from kiosk_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Database not initialized. Call init_engine_from_url() first."


def _engine_options(
    url: URL,
    pool_size: int,
    max_overflow: int,
    sqlite_busy_timeout: float,
) -> dict[str, Any]:
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            raise ValueError("SQLite database must be a file; in-memory databases are per-connection")
        return {
            "connect_args": {"check_same_thread": False, "timeout": sqlite_busy_timeout},
        }
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "isolation_level": "REPEATABLE READ",
    }


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    sqlite_busy_timeout: float = 30.0,
) -> Engine:
    """
    Create the engine and session factory, replacing any previous pair.

    Args:
        database_url: ``postgresql://...`` or ``sqlite:///path/to/file.db``.
        echo: Log every SQL statement.
        pool_size: PostgreSQL connections kept open.
        max_overflow: PostgreSQL connections allowed beyond pool_size.
        sqlite_busy_timeout: Seconds a SQLite connection waits on a lock
            before reporting "database is locked".
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    options = _engine_options(url, pool_size, max_overflow, sqlite_busy_timeout)
    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, echo=echo, **options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "database": url.database,
            "isolation_level": options.get("isolation_level", "default"),
        },
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    The factory the repository opens one session per transaction attempt
    from.  Safe to share between worker threads.
    """
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def create_tables() -> None:
    """Create every kiosk table that does not exist yet."""
    from kiosk_kernel.db.base import Base
    from kiosk_kernel.models import import_all_models

    import_all_models()
    Base.metadata.create_all(get_engine())
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every kiosk table.  Test teardown only."""
    from kiosk_kernel.db.base import Base
    from kiosk_kernel.models import import_all_models

    import_all_models()
    Base.metadata.drop_all(get_engine())
    logger.info("tables_dropped")


def reset_engine() -> None:
    """Dispose the pool and forget the engine so the next test starts clean."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


atexit.register(reset_engine)
