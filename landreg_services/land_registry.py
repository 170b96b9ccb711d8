"""
landreg_services.land_registry -- public operation surface.

Responsibility:
    The entry point HTTP handlers and batch jobs call. Translates request
    context and loosely typed filters into kernel calls and returns
    structured ``ServiceResult`` values (``success``, ``data``,
    ``error_code``, ``error``). Kernel errors never escape.

Architecture position:
    Services layer. Imports ``landreg_kernel`` and ``landreg_config``.
    ``create_land_registry`` is the composition root that wires stores,
    ledger, manager, reporter, archiver and handoff dispatcher.

Failure modes:
    Every ``LandRegistryError`` becomes ``ServiceResult(success=False)`` with
    the error's ``code``. Anything else is a programming error and propagates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from landreg_config import load_workflow_set
from landreg_kernel.db.engine import build_engine, create_tables, make_session_factory
from landreg_kernel.domain.audit import (
    ArchiveConfig,
    AuditEventDraft,
    AuditEventType,
    AuditQuery,
)
from landreg_kernel.domain.authorization import AuthorizationProvider
from landreg_kernel.domain.clock import Clock, SystemClock
from landreg_kernel.domain.records import Actor
from landreg_kernel.domain.workflow import TransitionTable
from landreg_kernel.exceptions import (
    InvalidQueryError,
    LandRegistryError,
    WorkflowValidationError,
)
from landreg_kernel.logging_config import LogContext, get_logger
from landreg_kernel.services.audit_archiver import AuditArchiver
from landreg_kernel.services.audit_ledger import AuditLedger
from landreg_kernel.services.compliance_reporter import ComplianceReporter
from landreg_kernel.services.handoff_dispatcher import HandoffDispatcher, HandoffHandler
from landreg_kernel.services.workflow_manager import WorkflowManager
from landreg_kernel.stores.memory import (
    InMemoryAuditStore,
    InMemoryHandoffStore,
    InMemoryWorkflowStore,
)

logger = get_logger("services.land_registry")

PLANNING = "planning"
SURVEY = "survey"
DEEDS = "deeds"


@dataclass(frozen=True)
class RequestContext:
    """Caller identity and request metadata supplied by the HTTP layer."""
    user_id: str
    role: str
    name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None
    metadata: Mapping[str, Any] | None = None

    def to_actor(self) -> Actor:
        return Actor(
            user_id=self.user_id,
            role=self.role,
            name=self.name,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


@dataclass(frozen=True)
class ServiceResult:
    success: bool
    data: Any = None
    error_code: str | None = None
    error: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls, error_code: str, error: str, details: Mapping[str, Any] | None = None
    ) -> "ServiceResult":
        return cls(success=False, error_code=error_code, error=error,
                   details=dict(details or {}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error_code": self.error_code,
            "error": self.error,
            "details": dict(self.details),
        }


def _parse_datetime(value: Any, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidQueryError(f"{name} is not an ISO timestamp: {value!r}") from None
    else:
        raise InvalidQueryError(f"{name} must be a datetime or ISO string")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _parse_event_type(value: Any) -> AuditEventType:
    try:
        return AuditEventType.parse(value)
    except ValueError as exc:
        raise WorkflowValidationError(str(exc)) from None


def build_audit_query(filters: Mapping[str, Any] | None) -> AuditQuery:
    """
    Build an AuditQuery from request filters.

    Accepted keys: event_type / event_types, resource_type / resource_types,
    resource_id, user_id, user_role, action, start_date, end_date, archived,
    limit (default 100), offset (default 0).
    """
    filters = dict(filters or {})
    event_types = _as_tuple(filters.get("event_types", filters.get("event_type")))
    resource_types = _as_tuple(
        filters.get("resource_types", filters.get("resource_type"))
    )
    try:
        limit = int(filters.get("limit", 100))
        offset = int(filters.get("offset", 0))
    except (TypeError, ValueError):
        raise InvalidQueryError("limit and offset must be integers") from None
    archived = filters.get("archived")
    if archived is not None and not isinstance(archived, bool):
        raise InvalidQueryError("archived must be a boolean")

    return AuditQuery(
        event_types=tuple(_parse_event_type(t) for t in event_types),
        resource_types=tuple(str(t) for t in resource_types),
        resource_id=filters.get("resource_id"),
        actor_id=filters.get("user_id"),
        actor_role=filters.get("user_role"),
        action=filters.get("action"),
        start=_parse_datetime(filters.get("start_date"), "start_date"),
        end=_parse_datetime(filters.get("end_date"), "end_date"),
        archived=archived,
        limit=limit,
        offset=offset,
    )


class LandRegistryService:
    """
    Public operations over the workflow kernel and audit trail.

    Every method returns a ServiceResult; none raise kernel errors.
    """

    def __init__(
        self,
        manager: WorkflowManager,
        ledger: AuditLedger,
        reporter: ComplianceReporter,
        archiver: AuditArchiver,
        handoffs: HandoffDispatcher,
    ):
        self._manager = manager
        self._ledger = ledger
        self._reporter = reporter
        self._archiver = archiver
        self._handoffs = handoffs

    @property
    def table(self) -> TransitionTable:
        return self._manager.table

    def _run(self, operation: str, fn: Callable[[], Any]) -> ServiceResult:
        try:
            return ServiceResult.ok(fn())
        except LandRegistryError as exc:
            logger.warning(
                "operation_failed",
                extra={"operation": operation, "error_code": exc.code},
            )
            return ServiceResult.fail(
                exc.code,
                str(exc),
                {k: v for k, v in vars(exc).items() if not k.startswith("_")},
            )

    # =========================================================================
    # Workflow transitions
    # =========================================================================

    def transition(
        self,
        domain: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        context: RequestContext,
        reason: str | None = None,
    ) -> ServiceResult:
        with LogContext.bind(correlation_id=context.correlation_id):
            outcome = self._manager.transition(
                domain,
                entity_id,
                from_state,
                to_state,
                context.to_actor(),
                reason=reason,
                metadata=context.metadata,
            )
        if not outcome.success:
            return ServiceResult.fail(
                outcome.error_code, outcome.error_message, outcome.details
            )
        return ServiceResult.ok({
            "domain": domain,
            "entity_id": entity_id,
            "new_state": outcome.new_state,
            "display_status": self.table.to_display_status(domain, outcome.new_state),
            "version": outcome.version,
            "transition": outcome.transition.to_dict(),
            "audit_entry_id": str(outcome.audit_entry.id) if outcome.audit_entry else None,
            "audited": outcome.audited,
        })

    def transition_planning(self, entity_id, from_state, to_state, context, reason=None):
        return self.transition(PLANNING, entity_id, from_state, to_state, context, reason)

    def transition_survey(self, entity_id, from_state, to_state, context, reason=None):
        return self.transition(SURVEY, entity_id, from_state, to_state, context, reason)

    def transition_deeds(self, entity_id, from_state, to_state, context, reason=None):
        return self.transition(DEEDS, entity_id, from_state, to_state, context, reason)

    def initialize_workflow(self, entity_id: str, domain: str) -> ServiceResult:
        return self._run(
            "initialize_workflow",
            lambda: _position_dict(self._manager.initialize(domain, entity_id)),
        )

    def get_current_state(self, entity_id: str, domain: str) -> ServiceResult:
        return self._run(
            "get_current_state",
            lambda: _position_dict(self._manager.get_current_state(domain, entity_id)),
        )

    def get_history(
        self,
        entity_id: str,
        domain: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> ServiceResult:
        return self._run(
            "get_history",
            lambda: [
                record.to_dict()
                for record in self._manager.get_history(domain, entity_id, offset, limit)
            ],
        )

    def valid_next_states(self, domain: str, state: str, role: str) -> ServiceResult:
        return self._run(
            "valid_next_states",
            lambda: sorted(self._manager.valid_next_states(domain, state, role)),
        )

    def get_handoffs(self, entity_id: str) -> ServiceResult:
        return self._run(
            "get_handoffs",
            lambda: [
                {
                    "id": str(h.id),
                    "trigger": h.trigger,
                    "from_module": h.from_module,
                    "to_module": h.to_module,
                    "state": h.state,
                    "status": h.status.value,
                    "created_at": h.created_at.isoformat(),
                    "error": h.error,
                }
                for h in self._handoffs.events_for(entity_id)
            ],
        )

    # =========================================================================
    # Audit trail
    # =========================================================================

    def log_audit_event(
        self,
        event_type: str | AuditEventType,
        resource_type: str,
        resource_id: str,
        actor_id: str,
        action: str,
        description: str,
        options: Mapping[str, Any] | None = None,
    ) -> ServiceResult:
        """
        Append an audit entry outside any workflow transition.

        ``options`` may carry actor_name, actor_role, changes, metadata,
        ip_address and user_agent.
        """
        options = dict(options or {})

        def append():
            draft = AuditEventDraft(
                event_type=_parse_event_type(event_type),
                resource_type=resource_type,
                resource_id=resource_id,
                actor_id=actor_id,
                action=action,
                description=description,
                actor_name=options.get("actor_name"),
                actor_role=options.get("actor_role"),
                changes=options.get("changes"),
                metadata=options.get("metadata"),
                ip_address=options.get("ip_address"),
                user_agent=options.get("user_agent"),
            )
            return self._ledger.append(draft).to_dict()

        return self._run("log_audit_event", append)

    def query_audit_trail(self, filters: Mapping[str, Any] | None = None) -> ServiceResult:
        def query():
            page = self._ledger.query(build_audit_query(filters))
            return {
                "entries": [entry.to_dict() for entry in page.entries],
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "has_more": page.has_more,
            }

        return self._run("query_audit_trail", query)

    def generate_compliance_report(
        self, filters: Mapping[str, Any] | None = None
    ) -> ServiceResult:
        """
        ``filters`` requires resource_type and resource_id; start_date,
        end_date and include_archived are optional.
        """
        filters = dict(filters or {})

        def generate():
            if not filters.get("resource_type") or not filters.get("resource_id"):
                raise InvalidQueryError("resource_type and resource_id are required")
            report = self._reporter.generate(
                filters["resource_type"],
                filters["resource_id"],
                start=_parse_datetime(filters.get("start_date"), "start_date"),
                end=_parse_datetime(filters.get("end_date"), "end_date"),
                include_archived=bool(filters.get("include_archived", False)),
            )
            return {
                "resource_type": report.resource_type,
                "resource_id": report.resource_id,
                "total_events": report.total_events,
                "events": [entry.to_dict() for entry in report.events],
                "timeline": [
                    {
                        "timestamp": row.timestamp.isoformat(),
                        "event": row.event,
                        "actor": row.actor,
                        "role": row.role,
                        "description": row.description,
                    }
                    for row in report.timeline
                ],
                "event_counts": dict(report.event_counts),
                "integrity": {
                    "hash_chain_valid": report.integrity.valid,
                    "tamper_detected": report.integrity.tamper_detected,
                    "missing_entries": report.integrity.missing_entries,
                },
                "generated_at": report.generated_at.isoformat(),
            }

        return self._run("generate_compliance_report", generate)

    def verify_audit_trail_integrity(
        self, resource_type: str, resource_id: str
    ) -> ServiceResult:
        return self._run(
            "verify_audit_trail_integrity",
            lambda: self._ledger.verify_integrity(resource_type, resource_id).to_dict(),
        )

    def archive_old_logs(self, config: ArchiveConfig | None = None) -> ServiceResult:
        def archive():
            result = self._archiver.archive_old_entries(config)
            return {
                "archived_count": result.archived_count,
                "cutoff": result.cutoff.isoformat(),
            }

        return self._run("archive_old_logs", archive)

    def archive_statistics(self) -> ServiceResult:
        def stats():
            s = self._archiver.statistics()
            return {
                "total": s.total,
                "active": s.active,
                "archived": s.archived,
                "oldest": s.oldest.isoformat() if s.oldest else None,
                "newest": s.newest.isoformat() if s.newest else None,
            }

        return self._run("archive_statistics", stats)


def _position_dict(position) -> dict[str, Any]:
    return {
        "domain": position.domain,
        "entity_id": position.entity_id,
        "state": position.state,
        "display_status": position.display_status,
        "version": position.version,
        "is_terminal": position.is_terminal,
    }


def create_land_registry(
    authorization: AuthorizationProvider,
    *,
    database_url: str | None = None,
    clock: Clock | None = None,
    config_dir: Path | None = None,
    handoff_handlers: Mapping[str, HandoffHandler] | None = None,
) -> LandRegistryService:
    """
    Wire a LandRegistryService.

    Without ``database_url`` every store is in memory and private to the
    returned service. With one, tables are created if missing and the
    SQLAlchemy stores are used.
    """
    clock = clock or SystemClock()
    table = load_workflow_set(config_dir).table

    if database_url:
        from landreg_kernel.stores.sql import SqlAuditStore, SqlHandoffStore, SqlWorkflowStore

        engine = build_engine(database_url)
        create_tables(engine)
        factory = make_session_factory(engine)
        workflow_store = SqlWorkflowStore(factory)
        audit_store = SqlAuditStore(factory)
        handoff_store = SqlHandoffStore(factory)
    else:
        workflow_store = InMemoryWorkflowStore()
        audit_store = InMemoryAuditStore()
        handoff_store = InMemoryHandoffStore()

    ledger = AuditLedger(audit_store, clock)
    handoffs = HandoffDispatcher(handoff_store, clock, handoff_handlers)
    manager = WorkflowManager(
        table,
        workflow_store,
        authorization,
        audit_ledger=ledger,
        handoffs=handoffs,
        clock=clock,
    )
    return LandRegistryService(
        manager=manager,
        ledger=ledger,
        reporter=ComplianceReporter(ledger, clock),
        archiver=AuditArchiver(audit_store, clock),
        handoffs=handoffs,
    )
