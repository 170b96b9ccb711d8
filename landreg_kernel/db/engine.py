"""
Module: landreg_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.
Architecture position: Kernel > DB. May import from db/base.py. MUST NOT
    import from stores/, services/ or outer layers (create_tables imports the
    models package to populate metadata).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) where the audit chain needs serialization.
    - In-memory SQLite shares a single connection (StaticPool) so every
      session sees the same database; it is accepted for tests and embedding.
      File SQLite opens a connection per session (NullPool).
    - Every SQLite database has one process-wide reentrant lock
      (serialized_access). Stores hold it for each transaction, so a
      shared connection is never committed or rolled back underneath
      another thread and chain appends never race for a position.

Failure modes:
    - RuntimeError if get_engine/get_session_factory is called
      before init_engine_from_url().

Audit relevance:
    session_scope() gives every store operation commit-or-rollback semantics,
    so a transition and its history row are written together or not at all.
"""

import atexit
import threading
from contextlib import AbstractContextManager, contextmanager, nullcontext
from typing import Generator

from sqlalchemy import create_engine, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, QueuePool, StaticPool

from landreg_kernel.logging_config import get_logger

logger = get_logger("db.engine")

# Module-level engine and session factory
_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

# One lock per SQLite database URL
_sqlite_locks: dict[str, threading.RLock] = {}
_sqlite_locks_guard = threading.Lock()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def is_memory_sqlite(database_url: str) -> bool:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return False
    return (
        url.database in (None, "", ":memory:")
        or url.query.get("mode") == "memory"
    )


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create an engine configured for the URL's dialect without installing it
    as the process default.

    Args:
        database_url: ``postgresql://...`` or ``sqlite://`` URL.
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool (PostgreSQL).
        max_overflow: Max connections beyond pool_size (PostgreSQL).
        pool_pre_ping: If True, test connections before use.
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.
    """
    if is_memory_sqlite(database_url):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    elif make_url(database_url).get_backend_name() == "sqlite":
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    logger.info(
        "engine_created",
        extra={"dialect": engine.dialect.name, "echo": echo},
    )
    return engine


def serialized_access(bind: Engine | None) -> AbstractContextManager:
    """
    Lock guarding every transaction against a SQLite database.

    SQLite allows one writer at a time and an in-memory database lives on a
    single shared connection, so stores serialize their transactions per
    database. Other dialects get a no-op context; row locks and unique
    constraints serialize them instead.
    """
    if bind is None or bind.dialect.name != "sqlite":
        return nullcontext()
    key = bind.url.render_as_string(hide_password=False)
    with _sqlite_locks_guard:
        return _sqlite_locks.setdefault(key, threading.RLock())


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_engine_from_url(database_url: str, **kwargs) -> Engine:
    """
    Initialize the process-wide engine and session factory.

    A second call overwrites the first.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(database_url, **kwargs)
    _SessionFactory = make_session_factory(_engine)
    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory for creating sessions.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit; rolls back and re-raises on exception; always
    closes the session.

    Usage:
        with session_scope(factory) as session:
            session.add(entity)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create all land registry tables and register immutability listeners."""
    from landreg_kernel.db.base import Base
    from landreg_kernel.db.immutability import register_immutability_listeners
    import landreg_kernel.models  # noqa: F401  (populate metadata)

    Base.metadata.create_all(engine or get_engine())
    register_immutability_listeners()


def drop_tables(engine: Engine | None = None) -> None:
    """
    Drop all tables. Use with caution - primarily for testing.
    """
    from landreg_kernel.db.base import Base
    import landreg_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """
    Reset the engine and session factory.

    Useful for test cleanup.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release all pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres(engine: Engine | None = None) -> bool:
    engine = engine or _engine
    if engine is None:
        return False
    return engine.dialect.name == "postgresql"
