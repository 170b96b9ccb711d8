"""
HandoffDispatcher -- notifies downstream modules when an entity reaches a
state another module owns.

Responsibility:
    A planning scheme reaching ``approved`` becomes work for survey; a sealed
    survey plan becomes work for deeds; a registered title becomes work for
    operations. The dispatcher records a ``WorkflowHandoff`` (pending), runs
    the handler registered for its trigger, and marks it processed or failed.

Architecture position:
    Kernel > Services. Called by the WorkflowManager after a successful
    commit; handlers are plain callables supplied by the outer layers.

Failure modes:
    Handler exceptions are logged and recorded on the handoff as ``failed``;
    they never propagate into the transition that raised the handoff.
    A trigger with no handler stays ``pending`` until ``retry_pending``.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping
from uuid import uuid4

from landreg_kernel.domain.clock import Clock, SystemClock
from landreg_kernel.domain.handoff import HandoffStatus, WorkflowHandoff
from landreg_kernel.domain.workflow import WorkflowDefinition
from landreg_kernel.logging_config import get_logger
from landreg_kernel.stores.base import HandoffStore

logger = get_logger("services.handoff_dispatcher")

HandoffHandler = Callable[[WorkflowHandoff], None]


class HandoffDispatcher:
    def __init__(
        self,
        store: HandoffStore,
        clock: Clock | None = None,
        handlers: Mapping[str, HandoffHandler] | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._handlers: dict[str, HandoffHandler] = dict(handlers or {})

    def register(self, trigger: str, handler: HandoffHandler) -> None:
        self._handlers[trigger] = handler

    def dispatch(
        self,
        definition: WorkflowDefinition,
        entity_id: str,
        state: str,
        triggered_by: str,
        payload: Mapping[str, Any] | None = None,
    ) -> WorkflowHandoff | None:
        """Record and run the handoff declared for ``state``, if any."""
        rule = definition.handoff_for(state)
        if rule is None:
            return None

        handoff = self._store.record(
            WorkflowHandoff(
                id=uuid4(),
                trigger=rule.trigger,
                from_module=definition.name,
                to_module=rule.to_module,
                entity_id=entity_id,
                state=state,
                triggered_by=triggered_by,
                created_at=self._clock.now(),
                payload=dict(payload) if payload is not None else None,
            )
        )
        return self._run(handoff)

    def _run(self, handoff: WorkflowHandoff) -> WorkflowHandoff:
        handler = self._handlers.get(handoff.trigger)
        extra = {
            "handoff_id": str(handoff.id),
            "trigger": handoff.trigger,
            "to_module": handoff.to_module,
            "entity_id": handoff.entity_id,
        }
        if handler is None:
            logger.info("handoff_pending", extra=extra)
            return handoff

        try:
            handler(handoff)
        except Exception as exc:
            logger.warning("handoff_failed", extra=extra, exc_info=True)
            return self._store.mark(
                handoff.id, HandoffStatus.FAILED, self._clock.now(), str(exc)
            )

        logger.info("handoff_processed", extra=extra)
        return self._store.mark(handoff.id, HandoffStatus.PROCESSED, self._clock.now())

    def retry_pending(self) -> tuple[WorkflowHandoff, ...]:
        """Run handlers for every pending handoff that now has one."""
        return tuple(self._run(handoff) for handoff in self._store.pending())

    def events_for(self, entity_id: str) -> tuple[WorkflowHandoff, ...]:
        return self._store.for_entity(entity_id)

    def pending(self) -> tuple[WorkflowHandoff, ...]:
        return self._store.pending()
