"""Downstream module handoff records."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID


class HandoffStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkflowHandoff:
    """A trigger raised when an entity reaches a state owned by another module.

    Example: a planning scheme reaching ``approved`` hands off to survey.
    """
    id: UUID
    trigger: str
    from_module: str
    to_module: str
    entity_id: str
    state: str
    triggered_by: str
    created_at: datetime
    status: HandoffStatus = HandoffStatus.PENDING
    payload: Mapping[str, Any] | None = None
    processed_at: datetime | None = None
    error: str | None = None

    def marked(
        self,
        status: HandoffStatus,
        at: datetime,
        error: str | None = None,
    ) -> "WorkflowHandoff":
        return replace(self, status=status, processed_at=at, error=error)
