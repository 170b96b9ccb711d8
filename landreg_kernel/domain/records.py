"""
Workflow value objects (``landreg_kernel.domain.records``).

Frozen DTOs passed between the workflow manager and its stores. ``Actor`` is
the caller identity supplied with every request; ``TransitionRecord`` is one
immutable history row; ``WorkflowSnapshot`` is what a store loads;
``TransitionOutcome`` is the structured result returned to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from landreg_kernel.domain.audit import AuditLogEntry


@dataclass(frozen=True)
class Actor:
    """The user performing an operation and the role they act under."""
    user_id: str
    role: str
    name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TransitionRecord:
    """One committed state change. ``version`` is the version it produced."""
    domain: str
    entity_id: str
    from_state: str
    to_state: str
    user_id: str
    user_role: str
    timestamp: datetime
    version: int
    reason: str | None = None
    metadata: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "entity_id": self.entity_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "user_id": self.user_id,
            "user_role": self.user_role,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "reason": self.reason,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
        }


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Persisted state of one entity as read from a store."""
    domain: str
    entity_id: str
    current_state: str
    version: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class WorkflowPosition:
    """Current state with its derived display status."""
    domain: str
    entity_id: str
    state: str
    display_status: str
    version: int
    is_terminal: bool


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a compare-and-swap commit.

    When ``committed`` is False, ``version`` is the version found in the
    store (the caller lost the race).
    """
    committed: bool
    version: int


@dataclass(frozen=True)
class TransitionOutcome:
    """Structured result of ``WorkflowManager.transition``."""
    success: bool
    domain: str
    entity_id: str
    new_state: str | None = None
    transition: TransitionRecord | None = None
    version: int | None = None
    audit_entry: AuditLogEntry | None = None
    error_code: str | None = None
    error_message: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def audited(self) -> bool:
        return self.audit_entry is not None
