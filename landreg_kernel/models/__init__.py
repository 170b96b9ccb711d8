"""ORM models. Importing this package registers every table on Base.metadata."""

from landreg_kernel.models.audit_entry import AuditEntryModel
from landreg_kernel.models.handoff import WorkflowHandoffModel
from landreg_kernel.models.workflow_state import (
    WorkflowStateModel,
    WorkflowTransitionModel,
)

__all__ = [
    "AuditEntryModel",
    "WorkflowHandoffModel",
    "WorkflowStateModel",
    "WorkflowTransitionModel",
]
