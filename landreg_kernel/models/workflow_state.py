"""
Module: landreg_kernel.models.workflow_state
Responsibility: ORM persistence for entity workflow state and its
    append-only transition history.
Architecture position: Kernel > Models. May import from db/base.py and domain/.

Invariants enforced:
    - One WorkflowStateModel row per (domain, entity_id).
    - version increases by exactly 1 per committed transition; the store's
      compare-and-swap UPDATE is conditioned on the previous version.
    - (domain, entity_id, version) is unique in the history, so two writers
      can never both record the same version.
    - History rows are immutable (see db/immutability.py).
"""

from datetime import datetime

from sqlalchemy import JSON, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from landreg_kernel.db.base import Base, as_utc
from landreg_kernel.domain.records import TransitionRecord, WorkflowSnapshot


class WorkflowStateModel(Base):
    """Current state and version of one entity in one domain."""

    __tablename__ = "workflow_states"

    __table_args__ = (
        UniqueConstraint("domain", "entity_id", name="uq_workflow_state_entity"),
    )

    domain: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    current_state: Mapped[str] = mapped_column(String(50), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<WorkflowState {self.domain}:{self.entity_id} {self.current_state} v{self.version}>"

    def to_snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            domain=self.domain,
            entity_id=self.entity_id,
            current_state=self.current_state,
            version=self.version,
            updated_at=as_utc(self.updated_at),
        )


class WorkflowTransitionModel(Base):
    """One committed transition. Append-only."""

    __tablename__ = "workflow_transitions"

    __table_args__ = (
        UniqueConstraint(
            "domain", "entity_id", "version", name="uq_workflow_transition_version"
        ),
        Index("idx_transition_entity", "domain", "entity_id"),
    )

    domain: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    from_state: Mapped[str] = mapped_column(String(50), nullable=False)
    to_state: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_role: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    transition_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(nullable=False)

    @classmethod
    def from_record(cls, record: TransitionRecord) -> "WorkflowTransitionModel":
        return cls(
            domain=record.domain,
            entity_id=record.entity_id,
            from_state=record.from_state,
            to_state=record.to_state,
            user_id=record.user_id,
            user_role=record.user_role,
            reason=record.reason,
            transition_metadata=dict(record.metadata) if record.metadata is not None else None,
            timestamp=record.timestamp,
            version=record.version,
        )

    def to_record(self) -> TransitionRecord:
        return TransitionRecord(
            domain=self.domain,
            entity_id=self.entity_id,
            from_state=self.from_state,
            to_state=self.to_state,
            user_id=self.user_id,
            user_role=self.user_role,
            timestamp=as_utc(self.timestamp),
            version=self.version,
            reason=self.reason,
            metadata=self.transition_metadata,
        )
