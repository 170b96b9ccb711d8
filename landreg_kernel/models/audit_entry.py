"""
Module: landreg_kernel.models.audit_entry
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models. May import from db/base.py and domain/.

Invariants enforced:
    - Entries are append-only; only archived/archive_date may change (ORM
      listener in db/immutability.py).
    - (resource_type, resource_id, position) is unique: two concurrent
      appends to the same chain cannot both claim the same slot.

Failure modes:
    - ImmutabilityViolationError on an ORM update of a hashed field or any
      delete.
    - IntegrityError on a position collision; the SQL store retries.

Audit relevance:
    AuditEntryModel IS the audit trail. Hashes are computed by the
    AuditLedger and only stored here.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from landreg_kernel.db.base import Base, as_utc
from landreg_kernel.domain.audit import AuditEventType, AuditLogEntry


class AuditEntryModel(Base):
    """Sealed audit entry row."""

    __tablename__ = "audit_log_entries"

    __table_args__ = (
        UniqueConstraint(
            "resource_type", "resource_id", "position", name="uq_audit_chain_position"
        ),
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_timestamp", "timestamp"),
    )

    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    current_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    chain_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archive_date: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.event_type} {self.resource_type}:{self.resource_id}#{self.position}>"

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditEntryModel":
        return cls(
            id=entry.id,
            event_type=entry.event_type.value,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            actor_id=entry.actor_id,
            actor_name=entry.actor_name,
            actor_role=entry.actor_role,
            action=entry.action,
            description=entry.description,
            changes=dict(entry.changes) if entry.changes is not None else None,
            entry_metadata=dict(entry.metadata) if entry.metadata is not None else None,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp,
            position=entry.position,
            previous_hash=entry.previous_hash,
            current_hash=entry.current_hash,
            chain_hash=entry.chain_hash,
            archived=entry.archived,
            archive_date=entry.archive_date,
        )

    def to_entry(self) -> AuditLogEntry:
        return AuditLogEntry(
            id=self.id,
            event_type=AuditEventType(self.event_type),
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            actor_id=self.actor_id,
            actor_name=self.actor_name,
            actor_role=self.actor_role,
            action=self.action,
            description=self.description,
            changes=self.changes,
            metadata=self.entry_metadata,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            timestamp=as_utc(self.timestamp),
            position=self.position,
            previous_hash=self.previous_hash,
            current_hash=self.current_hash,
            chain_hash=self.chain_hash,
            archived=self.archived,
            archive_date=as_utc(self.archive_date),
        )
