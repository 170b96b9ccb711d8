"""Database infrastructure: declarative base, engine, immutability listeners."""

from landreg_kernel.db.base import Base, UUIDString, as_utc
from landreg_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    is_memory_sqlite,
    is_postgres,
    make_session_factory,
    reset_engine,
    serialized_access,
    session_scope,
)

__all__ = [
    "Base",
    "UUIDString",
    "as_utc",
    "build_engine",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "is_memory_sqlite",
    "is_postgres",
    "make_session_factory",
    "reset_engine",
    "serialized_access",
    "session_scope",
]
