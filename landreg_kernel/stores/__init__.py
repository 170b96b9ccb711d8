"""Persistence stores: protocols, in-memory reference stores, SQLAlchemy stores."""

from landreg_kernel.stores.base import AuditStore, HandoffStore, WorkflowStore
from landreg_kernel.stores.memory import (
    InMemoryAuditStore,
    InMemoryHandoffStore,
    InMemoryWorkflowStore,
)

__all__ = [
    "AuditStore",
    "HandoffStore",
    "InMemoryAuditStore",
    "InMemoryHandoffStore",
    "InMemoryWorkflowStore",
    "WorkflowStore",
]
