"""
landreg_kernel.services.workflow_manager -- Workflow transition execution.

Responsibility:
    Validates, authorizes and commits state transitions for planning, survey
    and deeds entities, then records each committed transition in the audit
    chain and raises any downstream handoff. Thin coordinator: legality comes
    from the TransitionTable, role membership from the AuthorizationProvider,
    persistence from the WorkflowStore.

Architecture position:
    Kernel > Services. Imports domain/, stores/ and the audit ledger.

Invariants enforced:
    - A transition is committed only if ``(domain, current_state, role) ->
      to_state`` is in the table, or the role is the domain's bypass role.
    - Terminal states are absorbing for every role, bypass included.
    - ``version`` grows by exactly one per committed transition; a commit
      against a stale version is rejected (VersionConflictError), never
      applied.

Failure modes:
    ``commit_transition`` raises the typed errors below; ``transition``
    returns them as a failed ``TransitionOutcome``.
      - UnknownDomainError / UnknownStateError / InvalidTransitionRequestError
      - StateConflictError      persisted state != caller's from_state
      - TerminalStateError      from_state is terminal
      - RoleNotHeldError        provider denies the claimed role
      - TransitionNotPermittedError
      - VersionConflictError    compare-and-swap lost the race
      - StoreUnavailableError   backing store failed

Audit relevance:
    The audit append runs after the commit. If it fails the transition stays
    committed; the failure is logged as ``audit_append_failed`` and the
    outcome carries ``audit_entry=None``.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Mapping

from landreg_kernel.domain.authorization import AuthorizationProvider
from landreg_kernel.domain.clock import Clock, SystemClock
from landreg_kernel.domain.records import (
    Actor,
    TransitionOutcome,
    TransitionRecord,
    WorkflowPosition,
)
from landreg_kernel.domain.workflow import TransitionTable, WorkflowDefinition
from landreg_kernel.exceptions import (
    EntityNotFoundError,
    InvalidQueryError,
    InvalidTransitionRequestError,
    LandRegistryError,
    RoleNotHeldError,
    StateConflictError,
    StoreError,
    TerminalStateError,
    TransitionNotPermittedError,
    VersionConflictError,
)
from landreg_kernel.logging_config import LogContext, get_logger
from landreg_kernel.services.audit_ledger import AuditLedger
from landreg_kernel.services.handoff_dispatcher import HandoffDispatcher
from landreg_kernel.stores.base import WorkflowStore
from landreg_kernel.utils.hashing import normalize_json

logger = get_logger("services.workflow_manager")

OUTCOME_SUCCESS = "success"


def _emit_workflow_trace(
    domain: str,
    entity_id: str,
    from_state: str,
    to_state: str,
    role: str,
    outcome: str,
    duration_ms: float,
    version: int | None = None,
    audited: bool | None = None,
) -> None:
    """Emit one structured record per transition attempt."""
    extra: dict[str, Any] = {
        "workflow": domain,
        "entity_id": entity_id,
        "from_state": from_state,
        "to_state": to_state,
        "role": role,
        "outcome": outcome,
        "duration_ms": round(duration_ms, 3),
    }
    if version is not None:
        extra["version"] = version
    if audited is not None:
        extra["audited"] = audited
    logger.info("workflow_transition", extra=extra)


def _error_details(exc: LandRegistryError) -> dict[str, Any]:
    return {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in vars(exc).items()
        if not key.startswith("_")
    }


class WorkflowManager:
    """
    Executes workflow transitions against a TransitionTable.

    No lock is held between validation and commit: concurrent writers are
    serialized by the store's compare-and-swap.
    """

    def __init__(
        self,
        table: TransitionTable,
        store: WorkflowStore,
        authorization: AuthorizationProvider,
        audit_ledger: AuditLedger | None = None,
        handoffs: HandoffDispatcher | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._table = table
        self._store = store
        self._authorization = authorization
        self._audit = audit_ledger
        self._handoffs = handoffs
        self._clock = clock or SystemClock()

    @property
    def table(self) -> TransitionTable:
        return self._table

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(
        self,
        domain: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        actor: Actor,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Apply a transition and report the result without raising."""
        start = time.monotonic()
        with LogContext.bind(domain=domain, entity_id=entity_id, actor_id=actor.user_id):
            try:
                outcome = self.commit_transition(
                    domain, entity_id, from_state, to_state, actor, reason, metadata
                )
            except LandRegistryError as exc:
                duration_ms = (time.monotonic() - start) * 1000
                log = logger.error if isinstance(exc, StoreError) else logger.warning
                log(
                    "workflow_transition_rejected",
                    extra={
                        "error_code": exc.code,
                        "from_state": from_state,
                        "to_state": to_state,
                        "role": actor.role,
                    },
                    exc_info=isinstance(exc, StoreError),
                )
                _emit_workflow_trace(
                    domain, entity_id, from_state, to_state, actor.role,
                    outcome=exc.code, duration_ms=duration_ms,
                )
                return TransitionOutcome(
                    success=False,
                    domain=domain,
                    entity_id=entity_id,
                    error_code=exc.code,
                    error_message=str(exc),
                    details=_error_details(exc),
                )

            _emit_workflow_trace(
                domain, entity_id, from_state, to_state, actor.role,
                outcome=OUTCOME_SUCCESS,
                duration_ms=(time.monotonic() - start) * 1000,
                version=outcome.version,
                audited=outcome.audited,
            )
            return outcome

    def commit_transition(
        self,
        domain: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        actor: Actor,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TransitionOutcome:
        """
        Apply a transition, raising a typed error if it is refused.

        Checks run in a fixed order: input, load, state conflict, terminal,
        role membership, legality, compare-and-swap commit.
        """
        definition = self._table.definition(domain)
        if not entity_id:
            raise InvalidTransitionRequestError(domain, entity_id, "entity_id is required")
        self._table.require_state(domain, from_state)
        self._table.require_state(domain, to_state)
        if from_state == to_state:
            raise InvalidTransitionRequestError(
                domain, entity_id, "from_state and to_state are the same"
            )
        try:
            metadata = normalize_json(dict(metadata)) if metadata is not None else None
        except (TypeError, ValueError) as exc:
            raise InvalidTransitionRequestError(
                domain, entity_id, f"metadata is not JSON-serializable: {exc}"
            ) from exc

        snapshot = self._store.load(domain, entity_id)
        if snapshot is None:
            current_state, version = definition.initial_state, 0
        else:
            current_state, version = snapshot.current_state, snapshot.version

        if current_state != from_state:
            raise StateConflictError(domain, entity_id, from_state, current_state)

        if self._table.is_terminal(domain, from_state):
            raise TerminalStateError(domain, entity_id, from_state)

        decision = self._authorization.has_role(actor.user_id, actor.role)
        if not decision.allowed:
            raise RoleNotHeldError(actor.user_id, actor.role, decision.reason)

        if not self._table.permits(domain, from_state, to_state, actor.role):
            allowed = self._table.allowed_next_states(domain, from_state, actor.role)
            raise TransitionNotPermittedError(
                domain, from_state, to_state, actor.role, tuple(sorted(allowed))
            )

        record = TransitionRecord(
            domain=domain,
            entity_id=entity_id,
            from_state=from_state,
            to_state=to_state,
            user_id=actor.user_id,
            user_role=actor.role,
            timestamp=self._clock.now(),
            version=version + 1,
            reason=reason,
            metadata=metadata,
        )
        result = self._store.commit(domain, entity_id, version, to_state, record)
        if not result.committed:
            raise VersionConflictError(domain, entity_id, version, result.version)
        record = replace(record, version=result.version)

        audit_entry = self._append_audit(definition, record, actor)
        self._dispatch_handoff(definition, record)

        return TransitionOutcome(
            success=True,
            domain=domain,
            entity_id=entity_id,
            new_state=to_state,
            transition=record,
            version=result.version,
            audit_entry=audit_entry,
        )

    def _append_audit(self, definition: WorkflowDefinition, record: TransitionRecord, actor: Actor):
        if self._audit is None:
            return None
        try:
            return self._audit.record_transition(definition, record, actor)
        except Exception:
            # The transition is already committed and stays committed
            logger.error(
                "audit_append_failed",
                extra={
                    "domain": record.domain,
                    "entity_id": record.entity_id,
                    "version": record.version,
                    "to_state": record.to_state,
                },
                exc_info=True,
            )
            return None

    def _dispatch_handoff(self, definition: WorkflowDefinition, record: TransitionRecord) -> None:
        if self._handoffs is None:
            return
        try:
            self._handoffs.dispatch(
                definition,
                record.entity_id,
                record.to_state,
                triggered_by=record.user_id,
                payload={"version": record.version, "from_state": record.from_state},
            )
        except Exception:
            logger.error(
                "handoff_dispatch_failed",
                extra={"domain": record.domain, "entity_id": record.entity_id,
                       "to_state": record.to_state},
                exc_info=True,
            )

    # =========================================================================
    # Lifecycle and queries
    # =========================================================================

    def initialize(self, domain: str, entity_id: str) -> WorkflowPosition:
        """
        Create the workflow record at the domain's initial state (version 0).

        Raises:
            EntityAlreadyExistsError: The entity already has a record.
        """
        definition = self._table.definition(domain)
        if not entity_id:
            raise InvalidTransitionRequestError(domain, entity_id, "entity_id is required")
        snapshot = self._store.initialize(
            domain, entity_id, definition.initial_state, self._clock.now()
        )
        logger.info(
            "workflow_initialized",
            extra={"domain": domain, "entity_id": entity_id,
                   "state": snapshot.current_state},
        )
        return self._position(snapshot.domain, snapshot.entity_id,
                              snapshot.current_state, snapshot.version)

    def get_current_state(self, domain: str, entity_id: str) -> WorkflowPosition:
        self._table.definition(domain)
        snapshot = self._store.load(domain, entity_id)
        if snapshot is None:
            raise EntityNotFoundError(domain, entity_id)
        return self._position(domain, entity_id, snapshot.current_state, snapshot.version)

    def get_history(
        self,
        domain: str,
        entity_id: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[TransitionRecord, ...]:
        """Committed transitions, oldest first. Empty for unknown entities."""
        self._table.definition(domain)
        if offset < 0:
            raise InvalidQueryError("offset must not be negative")
        if limit is not None and limit < 1:
            raise InvalidQueryError("limit must be positive")
        return self._store.history(domain, entity_id, offset, limit)

    def valid_next_states(self, domain: str, state: str, role: str) -> frozenset[str]:
        """Targets ``role`` could move an entity in ``state`` to."""
        if self._table.is_terminal(domain, state):
            return frozenset()
        if self._table.is_bypass_role(domain, role):
            return frozenset(self._table.definition(domain).states) - {state}
        return self._table.allowed_next_states(domain, state, role)

    def _position(self, domain: str, entity_id: str, state: str, version: int) -> WorkflowPosition:
        return WorkflowPosition(
            domain=domain,
            entity_id=entity_id,
            state=state,
            display_status=self._table.to_display_status(domain, state),
            version=version,
            is_terminal=self._table.is_terminal(domain, state),
        )
