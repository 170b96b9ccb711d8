"""
ORM-level immutability enforcement for append-only records.

SQLAlchemy fires ``before_update`` / ``before_delete`` before SQL reaches the
database. The listeners registered here abort the flush with
``ImmutabilityViolationError`` when code tries to rewrite history:

Entity                  | Rule
------------------------|--------------------------------------------------
WorkflowTransitionModel | Always immutable, never deleted
AuditEntryModel         | Only ``archived`` / ``archive_date`` may change;
                        | never deleted
WorkflowStateModel      | Never deleted (state and version do change)

Bulk Core ``update()`` / ``delete()`` statements bypass ORM events. The audit
chain's hash verification is what detects tampering done that way.
"""

from sqlalchemy import event, inspect

from landreg_kernel.exceptions import ImmutabilityViolationError
from landreg_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

AUDIT_MUTABLE_FIELDS = frozenset({"archived", "archive_date"})


def _blocked(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_transition_update(mapper, connection, target):
    _blocked(
        "WorkflowTransition", target, "UPDATE",
        "Transition history is immutable",
    )


def _check_transition_delete(mapper, connection, target):
    _blocked(
        "WorkflowTransition", target, "DELETE",
        "Transition history cannot be deleted",
    )


def _check_audit_entry_update(mapper, connection, target):
    changed = sorted(
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in AUDIT_MUTABLE_FIELDS and attr.history.has_changes()
    )
    if changed:
        _blocked(
            "AuditLogEntry", target, "UPDATE",
            f"Audit entries are immutable (attempted change to {', '.join(changed)})",
        )


def _check_audit_entry_delete(mapper, connection, target):
    _blocked(
        "AuditLogEntry", target, "DELETE",
        "Audit entries cannot be deleted; archive them instead",
    )


def _check_state_delete(mapper, connection, target):
    _blocked(
        "WorkflowState", target, "DELETE",
        "Workflow records are never deleted",
    )


def _listeners():
    from landreg_kernel.models.audit_entry import AuditEntryModel
    from landreg_kernel.models.workflow_state import (
        WorkflowStateModel,
        WorkflowTransitionModel,
    )

    return (
        (WorkflowTransitionModel, "before_update", _check_transition_update),
        (WorkflowTransitionModel, "before_delete", _check_transition_delete),
        (AuditEntryModel, "before_update", _check_audit_entry_update),
        (AuditEntryModel, "before_delete", _check_audit_entry_delete),
        (WorkflowStateModel, "before_delete", _check_state_delete),
    )


def register_immutability_listeners() -> None:
    """
    Register all immutability listeners. Safe to call more than once.

    Call after models are imported and before any database operations.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that intentionally violate immutability
    to verify detection.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
