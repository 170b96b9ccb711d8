"""
In-memory reference stores.

Explicit objects with their own state; nothing is held at module level, so
two registries in one process never share data. Per-key ``threading.Lock``
objects serialize compare-and-swap commits and chain appends for the same
entity or resource while leaving unrelated keys independent.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
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
from landreg_kernel.exceptions import EntityAlreadyExistsError
from landreg_kernel.stores.base import SealFn, matches_query


class _KeyedLocks:
    """Lazily created lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple, threading.Lock] = {}

    def get(self, key: tuple) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class InMemoryWorkflowStore:
    def __init__(self) -> None:
        self._locks = _KeyedLocks()
        self._states: dict[tuple[str, str], WorkflowSnapshot] = {}
        self._history: dict[tuple[str, str], list[TransitionRecord]] = defaultdict(list)

    def load(self, domain: str, entity_id: str) -> WorkflowSnapshot | None:
        return self._states.get((domain, entity_id))

    def commit(
        self,
        domain: str,
        entity_id: str,
        expected_version: int,
        new_state: str,
        record: TransitionRecord,
    ) -> CommitResult:
        key = (domain, entity_id)
        with self._locks.get(key):
            current = self._states.get(key)
            actual = current.version if current is not None else 0
            if actual != expected_version:
                return CommitResult(committed=False, version=actual)
            new_version = actual + 1
            self._states[key] = WorkflowSnapshot(
                domain=domain,
                entity_id=entity_id,
                current_state=new_state,
                version=new_version,
                updated_at=record.timestamp,
            )
            self._history[key].append(replace(record, version=new_version))
            return CommitResult(committed=True, version=new_version)

    def initialize(
        self, domain: str, entity_id: str, state: str, at: datetime
    ) -> WorkflowSnapshot:
        key = (domain, entity_id)
        with self._locks.get(key):
            if key in self._states:
                raise EntityAlreadyExistsError(domain, entity_id)
            snapshot = WorkflowSnapshot(
                domain=domain,
                entity_id=entity_id,
                current_state=state,
                version=0,
                updated_at=at,
            )
            self._states[key] = snapshot
            return snapshot

    def history(
        self,
        domain: str,
        entity_id: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[TransitionRecord, ...]:
        records = list(self._history.get((domain, entity_id), ()))
        end = None if limit is None else offset + limit
        return tuple(records[offset:end])


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._locks = _KeyedLocks()
        self._guard = threading.Lock()
        self._chains: dict[tuple[str, str], list[AuditLogEntry]] = defaultdict(list)

    def append(self, resource_type: str, resource_id: str, seal: SealFn) -> AuditLogEntry:
        key = (resource_type, resource_id)
        with self._locks.get(key):
            chain = self._chains[key]
            head = None
            if chain:
                last = chain[-1]
                head = ChainHead(
                    position=last.position,
                    current_hash=last.current_hash,
                    chain_hash=last.chain_hash,
                )
            entry = seal(head)
            with self._guard:
                chain.append(entry)
            return entry

    def chain(self, resource_type: str, resource_id: str) -> tuple[AuditLogEntry, ...]:
        with self._guard:
            return tuple(self._chains.get((resource_type, resource_id), ()))

    def _all(self) -> list[AuditLogEntry]:
        with self._guard:
            return [entry for chain in self._chains.values() for entry in chain]

    def query(self, query: AuditQuery) -> AuditPage:
        matched = [e for e in self._all() if matches_query(e, query)]
        matched.sort(key=lambda e: (e.timestamp, e.position), reverse=True)
        page = matched[query.offset:query.offset + query.limit]
        return AuditPage(
            entries=tuple(page),
            total=len(matched),
            limit=query.limit,
            offset=query.offset,
        )

    def archive_before(self, cutoff: datetime, archived_at: datetime) -> int:
        count = 0
        with self._guard:
            for chain in self._chains.values():
                for i, entry in enumerate(chain):
                    if not entry.archived and entry.timestamp < cutoff:
                        chain[i] = entry.with_archive(archived_at)
                        count += 1
        return count

    def statistics(self) -> ArchiveStatistics:
        entries = self._all()
        archived = sum(1 for e in entries if e.archived)
        timestamps = [e.timestamp for e in entries]
        return ArchiveStatistics(
            total=len(entries),
            active=len(entries) - archived,
            archived=archived,
            oldest=min(timestamps) if timestamps else None,
            newest=max(timestamps) if timestamps else None,
        )


class InMemoryHandoffStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handoffs: dict[UUID, WorkflowHandoff] = {}

    def record(self, handoff: WorkflowHandoff) -> WorkflowHandoff:
        with self._lock:
            self._handoffs[handoff.id] = handoff
        return handoff

    def mark(
        self,
        handoff_id: UUID,
        status: HandoffStatus,
        at: datetime,
        error: str | None = None,
    ) -> WorkflowHandoff:
        with self._lock:
            updated = self._handoffs[handoff_id].marked(status, at, error)
            self._handoffs[handoff_id] = updated
        return updated

    def for_entity(self, entity_id: str) -> tuple[WorkflowHandoff, ...]:
        with self._lock:
            found = [h for h in self._handoffs.values() if h.entity_id == entity_id]
        return tuple(sorted(found, key=lambda h: h.created_at))

    def pending(self) -> tuple[WorkflowHandoff, ...]:
        with self._lock:
            found = [
                h for h in self._handoffs.values() if h.status == HandoffStatus.PENDING
            ]
        return tuple(sorted(found, key=lambda h: h.created_at))
