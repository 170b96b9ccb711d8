"""
Store protocols (``landreg_kernel.stores.base``).

Responsibility:
    The persistence seams used by the workflow manager, audit ledger and
    handoff dispatcher. Each protocol has an in-memory implementation
    (``stores.memory``) and a SQLAlchemy implementation (``stores.sql``).

Invariants enforced (by every implementation):
    - ``WorkflowStore.commit`` is a compare-and-swap on version: it succeeds
      only if the stored version equals ``expected_version`` and then writes
      the new state, version + 1, and the history record atomically.
    - ``AuditStore.append`` calls ``seal`` with the chain head while holding
      per-resource mutual exclusion, and stores the sealed entry before
      releasing it.
    - Stored audit entries change only through ``archive_before``.

Failure modes:
    - SQL implementations raise StoreUnavailableError for driver/database
      failures. Business conflicts are reported through return values
      (``CommitResult.committed``), never as store errors.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol, runtime_checkable
from uuid import UUID

from landreg_kernel.domain.audit import (
    ArchiveStatistics,
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    ChainHead,
)
from landreg_kernel.domain.handoff import HandoffStatus, WorkflowHandoff
from landreg_kernel.domain.records import (
    CommitResult,
    TransitionRecord,
    WorkflowSnapshot,
)

SealFn = Callable[[ChainHead | None], AuditLogEntry]


@runtime_checkable
class WorkflowStore(Protocol):
    def load(self, domain: str, entity_id: str) -> WorkflowSnapshot | None:
        ...

    def commit(
        self,
        domain: str,
        entity_id: str,
        expected_version: int,
        new_state: str,
        record: TransitionRecord,
    ) -> CommitResult:
        ...

    def initialize(
        self, domain: str, entity_id: str, state: str, at: datetime
    ) -> WorkflowSnapshot:
        """Create the record at ``state``, version 0.

        Raises:
            EntityAlreadyExistsError: A record already exists.
        """
        ...

    def history(
        self,
        domain: str,
        entity_id: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[TransitionRecord, ...]:
        """Transitions ordered by version, oldest first."""
        ...


@runtime_checkable
class AuditStore(Protocol):
    def append(self, resource_type: str, resource_id: str, seal: SealFn) -> AuditLogEntry:
        ...

    def chain(self, resource_type: str, resource_id: str) -> tuple[AuditLogEntry, ...]:
        """Every entry of one resource chain, in position order."""
        ...

    def query(self, query: AuditQuery) -> AuditPage:
        """Filtered entries, newest first."""
        ...

    def archive_before(self, cutoff: datetime, archived_at: datetime) -> int:
        """Flag active entries older than ``cutoff``; returns the count."""
        ...

    def statistics(self) -> ArchiveStatistics:
        ...


@runtime_checkable
class HandoffStore(Protocol):
    def record(self, handoff: WorkflowHandoff) -> WorkflowHandoff:
        ...

    def mark(
        self,
        handoff_id: UUID,
        status: HandoffStatus,
        at: datetime,
        error: str | None = None,
    ) -> WorkflowHandoff:
        ...

    def for_entity(self, entity_id: str) -> tuple[WorkflowHandoff, ...]:
        ...

    def pending(self) -> tuple[WorkflowHandoff, ...]:
        ...


def matches_query(entry: AuditLogEntry, query: AuditQuery) -> bool:
    """Whether ``entry`` satisfies every filter of ``query``."""
    if query.event_types and entry.event_type not in query.event_types:
        return False
    if query.resource_types and entry.resource_type not in query.resource_types:
        return False
    if query.resource_id is not None and entry.resource_id != query.resource_id:
        return False
    if query.actor_id is not None and entry.actor_id != query.actor_id:
        return False
    if query.actor_role is not None and entry.actor_role != query.actor_role:
        return False
    if query.action and query.action.lower() not in entry.action.lower():
        return False
    if query.start is not None and entry.timestamp < query.start:
        return False
    if query.end is not None and entry.timestamp > query.end:
        return False
    if query.archived is not None and entry.archived != query.archived:
        return False
    return True
