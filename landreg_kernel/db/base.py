"""
Module: landreg_kernel.db.base
Responsibility: Declarative base for all SQLAlchemy ORM models. Provides the
    UUID primary key convention and a type annotation map for consistent
    column types.
Architecture position: Kernel > DB. Lowest-level import target within the
    kernel. MUST NOT import from models/, stores/, services/ or domain/.

Invariants enforced:
    - UUID primary keys stored as String(36) for PostgreSQL/SQLite portability.
    - Timestamps are timezone-aware columns; values read back naive (SQLite)
      are interpreted as UTC by ``as_utc``.
"""

from datetime import datetime
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from landreg_kernel.domain.clock import as_utc  # noqa: F401  (re-exported)


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Converts UUID -> str on bind and str -> UUID on load.
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


class Base(DeclarativeBase):
    """
    Declarative base for all land registry models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        int: Integer,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


