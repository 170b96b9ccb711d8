"""
Structured JSON logging for the land registry kernel.

Every record is rendered as one JSON line: the envelope (``ts``, ``level``,
``logger``, ``message``), then the bound request context, then the
record's ``extra`` fields, then exception details.

Invariants:
- Context lives in a single immutable mapping held by a ContextVar, so a
  bind in one thread or task is never visible in another.
- Only names in ``CONTEXT_FIELDS`` can be bound. Bound context wins over an
  ``extra`` key of the same name.
- ``LogContext.bind`` restores the previous mapping on exit, including on
  exceptions.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any
from uuid import UUID

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor_id",
    "domain",
    "entity_id",
    "resource_type",
    "resource_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar(
    "landreg_log_context", default=_EMPTY
)


def _with_fields(fields: Mapping[str, Any]) -> Mapping[str, str]:
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise TypeError(f"unknown log context field(s): {', '.join(unknown)}")
    merged = dict(_context.get())
    merged.update({name: str(value) for name, value in fields.items() if value is not None})
    return MappingProxyType(merged)


class LogContext:
    """Request-scoped fields stamped onto every kernel log record."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Add fields to the current context. None values are ignored."""
        _context.set(_with_fields(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        current = _context.get()
        return {name: current[name] for name in CONTEXT_FIELDS if name in current}

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Add fields for the duration of a ``with`` block."""
        token = _context.set(_with_fields(fields))
        try:
            yield
        finally:
            _context.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_RECORD_ATTRIBUTES: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, datetime)):
        return obj.isoformat() if isinstance(obj, datetime) else str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, tuple):
        return list(obj)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    # LandRegistryError subclasses keep their structured fields as attributes
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    fields.update(
        (f"exc_{name}", value)
        for name, value in vars(exc).items()
        if not name.startswith("_") and name not in ("args", "code")
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------

ROOT_LOGGER = "landreg_kernel"

_configured = False
_configure_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``landreg_kernel`` namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the kernel logger. Later calls are no-ops."""
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.propagate = False

    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root.addHandler(target)


def reset_logging() -> None:
    """Detach handlers and allow ``configure_logging`` to run again."""
    global _configured
    with _configure_lock:
        _configured = False
    root = logging.getLogger(ROOT_LOGGER)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
