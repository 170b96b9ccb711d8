"""Services for the land registry kernel."""

from landreg_kernel.services.audit_archiver import ArchiveResult, AuditArchiver
from landreg_kernel.services.audit_ledger import AuditLedger
from landreg_kernel.services.compliance_reporter import ComplianceReporter
from landreg_kernel.services.handoff_dispatcher import HandoffDispatcher, HandoffHandler
from landreg_kernel.services.workflow_manager import WorkflowManager

__all__ = [
    "ArchiveResult",
    "AuditArchiver",
    "AuditLedger",
    "ComplianceReporter",
    "HandoffDispatcher",
    "HandoffHandler",
    "WorkflowManager",
]
