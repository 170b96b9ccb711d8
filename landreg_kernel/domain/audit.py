"""
Audit value objects (``landreg_kernel.domain.audit``).

Responsibility:
    Frozen types for the tamper-evident audit trail: the draft a caller
    submits, the sealed entry a store keeps, query filters and pages, the
    integrity report, and the compliance report built on top of them.

Architecture position:
    Kernel > Domain -- pure value objects, no I/O.

Invariants enforced:
    - ``AuditLogEntry.hash_fields()`` is the single definition of which
      fields the content hash covers. Archive flags are deliberately absent.
    - ``ChainHead`` carries exactly what the next append needs from its
      predecessor (position, current hash, chain hash).

Audit relevance:
    Every legally meaningful action (state transition, document view, export,
    signature) ends up as an ``AuditLogEntry``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from landreg_kernel.domain.clock import as_utc
from landreg_kernel.utils.hashing import canonical_timestamp


class AuditEventType(str, Enum):
    """Kinds of auditable actions."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    SEAL = "seal"
    REGISTER = "register"
    TRANSFER = "transfer"
    AMEND = "amend"
    VIEW = "view"
    EXPORT = "export"
    SIGN = "sign"
    VERIFY = "verify"
    LOGIN = "login"
    LOGOUT = "logout"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: "str | AuditEventType") -> "AuditEventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown audit event type: {value}") from None


@dataclass(frozen=True)
class AuditEventDraft:
    """An audit event before it is hashed and placed in its chain."""
    event_type: AuditEventType
    resource_type: str
    resource_id: str
    actor_id: str
    action: str
    description: str
    actor_name: str | None = None
    actor_role: str | None = None
    changes: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class AuditLogEntry:
    """A sealed, hash-chained audit entry.

    ``position`` is the zero-based index within the
    ``(resource_type, resource_id)`` chain.
    """
    id: UUID
    event_type: AuditEventType
    resource_type: str
    resource_id: str
    actor_id: str
    action: str
    description: str
    timestamp: datetime
    position: int
    current_hash: str
    chain_hash: str
    previous_hash: str | None = None
    actor_name: str | None = None
    actor_role: str | None = None
    changes: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    archived: bool = False
    archive_date: datetime | None = None

    def hash_fields(self) -> dict[str, Any]:
        """Business fields covered by ``current_hash``."""
        return hash_fields_of(self)

    def with_archive(self, archived_at: datetime) -> "AuditLogEntry":
        return replace(self, archived=True, archive_date=archived_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "actor_role": self.actor_role,
            "action": self.action,
            "description": self.description,
            "changes": dict(self.changes) if self.changes is not None else None,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "position": self.position,
            "previous_hash": self.previous_hash,
            "current_hash": self.current_hash,
            "chain_hash": self.chain_hash,
            "archived": self.archived,
            "archive_date": self.archive_date.isoformat() if self.archive_date else None,
        }


def hash_fields_of(entry: AuditEventDraft | AuditLogEntry) -> dict[str, Any]:
    """Extract hashed fields from a draft (with timestamp) or a sealed entry."""
    if entry.timestamp is None:
        raise ValueError("timestamp is required before hashing")
    return {
        "event_type": AuditEventType.parse(entry.event_type).value,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "actor_id": entry.actor_id,
        "actor_name": entry.actor_name,
        "actor_role": entry.actor_role,
        "action": entry.action,
        "description": entry.description,
        "changes": dict(entry.changes) if entry.changes is not None else None,
        "metadata": dict(entry.metadata) if entry.metadata is not None else None,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "timestamp": canonical_timestamp(entry.timestamp),
    }


@dataclass(frozen=True)
class ChainHead:
    """Latest entry of a resource chain, as seen by the next append."""
    position: int
    current_hash: str
    chain_hash: str


@dataclass(frozen=True)
class AuditQuery:
    """Filters for ``AuditLedger.query``. Unset filters match everything."""
    event_types: tuple[AuditEventType, ...] = ()
    resource_types: tuple[str, ...] = ()
    resource_id: str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    action: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    archived: bool | None = None
    limit: int = 100
    offset: int = 0

    def __post_init__(self) -> None:
        # Stored timestamps are aware UTC; naive bounds are read as UTC
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))


@dataclass(frozen=True)
class AuditPage:
    """One page of query results plus the unpaged total."""
    entries: tuple[AuditLogEntry, ...]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


@dataclass(frozen=True)
class IntegrityReport:
    """Result of verifying one resource chain."""
    resource_type: str
    resource_id: str
    valid: bool
    tamper_detected: bool
    missing_entries: int
    entry_count: int
    errors: tuple[str, ...] = ()
    first_broken_entry: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "valid": self.valid,
            "tamper_detected": self.tamper_detected,
            "missing_entries": self.missing_entries,
            "entry_count": self.entry_count,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class TimelineEntry:
    timestamp: datetime
    event: str
    actor: str
    role: str | None
    description: str


@dataclass(frozen=True)
class ComplianceReport:
    """Audit summary of one resource for a regulator or court."""
    resource_type: str
    resource_id: str
    total_events: int
    events: tuple[AuditLogEntry, ...]
    timeline: tuple[TimelineEntry, ...]
    integrity: IntegrityReport
    generated_at: datetime
    start: datetime | None = None
    end: datetime | None = None
    event_counts: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ArchiveConfig:
    """Retention policy. Entries older than ``archive_after_days`` are flagged."""
    retention_days: int = 2555
    archive_after_days: int = 365

    def __post_init__(self) -> None:
        if self.archive_after_days < 0 or self.retention_days < 0:
            raise ValueError("archive periods must be non-negative")
        if self.archive_after_days > self.retention_days:
            raise ValueError("archive_after_days must not exceed retention_days")


@dataclass(frozen=True)
class ArchiveStatistics:
    total: int
    active: int
    archived: int
    oldest: datetime | None = None
    newest: datetime | None = None
