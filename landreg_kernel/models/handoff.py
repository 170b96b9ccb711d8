"""ORM persistence for downstream module handoffs."""

from datetime import datetime

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from landreg_kernel.db.base import Base, as_utc
from landreg_kernel.domain.handoff import HandoffStatus, WorkflowHandoff


class WorkflowHandoffModel(Base):
    __tablename__ = "workflow_handoffs"

    __table_args__ = (
        Index("idx_handoff_entity", "entity_id"),
        Index("idx_handoff_status", "status"),
    )

    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    from_module: Mapped[str] = mapped_column(String(50), nullable=False)
    to_module: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[str] = mapped_column(String(50), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @classmethod
    def from_handoff(cls, handoff: WorkflowHandoff) -> "WorkflowHandoffModel":
        return cls(
            id=handoff.id,
            trigger=handoff.trigger,
            from_module=handoff.from_module,
            to_module=handoff.to_module,
            entity_id=handoff.entity_id,
            state=handoff.state,
            triggered_by=handoff.triggered_by,
            status=handoff.status.value,
            payload=dict(handoff.payload) if handoff.payload is not None else None,
            error=handoff.error,
            created_at=handoff.created_at,
            processed_at=handoff.processed_at,
        )

    def to_handoff(self) -> WorkflowHandoff:
        return WorkflowHandoff(
            id=self.id,
            trigger=self.trigger,
            from_module=self.from_module,
            to_module=self.to_module,
            entity_id=self.entity_id,
            state=self.state,
            triggered_by=self.triggered_by,
            created_at=as_utc(self.created_at),
            status=HandoffStatus(self.status),
            payload=self.payload,
            processed_at=as_utc(self.processed_at),
            error=self.error,
        )
