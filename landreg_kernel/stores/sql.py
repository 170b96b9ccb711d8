"""
SQLAlchemy stores (``landreg_kernel.stores.sql``).

Responsibility:
    Durable implementations of the store protocols for PostgreSQL (production)
    and SQLite (tests, embedding). Each public method runs in its own
    transaction obtained from the injected session factory.

Invariants enforced:
    - Compare-and-swap: ``UPDATE workflow_states ... WHERE version = :expected``.
      The first commit of a lazily created entity INSERTs; a unique-constraint
      violation means another writer created it first and is reported as a
      lost race, never overwritten.
    - Chain append: the latest entry of the resource is read with
      ``SELECT ... FOR UPDATE`` and the unique ``(resource_type, resource_id,
      position)`` constraint rejects a second writer for the same slot. The
      append is retried from a fresh read.
    - SQLite: every transaction holds the database's serialized_access lock,
      so a shared in-memory connection is never committed or rolled back
      under another thread's open work.

Failure modes:
    - StoreUnavailableError wraps every SQLAlchemyError that is not a handled
      constraint race.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from uuid import UUID

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from landreg_kernel.db.base import as_utc
from landreg_kernel.db.engine import serialized_access, session_scope
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
from landreg_kernel.exceptions import EntityAlreadyExistsError, StoreUnavailableError
from landreg_kernel.logging_config import get_logger
from landreg_kernel.models.audit_entry import AuditEntryModel
from landreg_kernel.models.handoff import WorkflowHandoffModel
from landreg_kernel.models.workflow_state import (
    WorkflowStateModel,
    WorkflowTransitionModel,
)
from landreg_kernel.stores.base import SealFn

logger = get_logger("stores.sql")


class _SqlStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory
        self._lock = serialized_access(session_factory.kw.get("bind"))

    @contextmanager
    def _session(self):
        with self._lock, session_scope(self._factory) as session:
            yield session


class SqlWorkflowStore(_SqlStore):

    @staticmethod
    def _select_state(session: Session, domain: str, entity_id: str) -> WorkflowStateModel | None:
        return session.execute(
            select(WorkflowStateModel).where(
                WorkflowStateModel.domain == domain,
                WorkflowStateModel.entity_id == entity_id,
            )
        ).scalar_one_or_none()

    def load(self, domain: str, entity_id: str) -> WorkflowSnapshot | None:
        try:
            with self._session() as session:
                row = self._select_state(session, domain, entity_id)
                return row.to_snapshot() if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("workflow.load", str(exc)) from exc

    def commit(
        self,
        domain: str,
        entity_id: str,
        expected_version: int,
        new_state: str,
        record: TransitionRecord,
    ) -> CommitResult:
        try:
            return self._commit(domain, entity_id, expected_version, new_state, record)
        except IntegrityError:
            # Another writer inserted the record or recorded this version first
            logger.info(
                "workflow_commit_race_lost",
                extra={"domain": domain, "entity_id": entity_id,
                       "expected_version": expected_version},
            )
            snapshot = self.load(domain, entity_id)
            return CommitResult(
                committed=False,
                version=snapshot.version if snapshot is not None else 0,
            )
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("workflow.commit", str(exc)) from exc

    def _commit(
        self,
        domain: str,
        entity_id: str,
        expected_version: int,
        new_state: str,
        record: TransitionRecord,
    ) -> CommitResult:
        new_version = expected_version + 1
        history_row = WorkflowTransitionModel.from_record(
            replace(record, version=new_version)
        )
        with self._session() as session:
            result = session.execute(
                update(WorkflowStateModel)
                .where(
                    WorkflowStateModel.domain == domain,
                    WorkflowStateModel.entity_id == entity_id,
                    WorkflowStateModel.version == expected_version,
                )
                .values(
                    current_state=new_state,
                    version=new_version,
                    updated_at=record.timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                session.add(history_row)
                session.flush()
                return CommitResult(committed=True, version=new_version)

            existing = self._select_state(session, domain, entity_id)
            if existing is not None:
                return CommitResult(committed=False, version=existing.version)
            if expected_version != 0:
                return CommitResult(committed=False, version=0)

            session.add(
                WorkflowStateModel(
                    domain=domain,
                    entity_id=entity_id,
                    current_state=new_state,
                    version=new_version,
                    created_at=record.timestamp,
                    updated_at=record.timestamp,
                )
            )
            session.add(history_row)
            session.flush()
            return CommitResult(committed=True, version=new_version)

    def initialize(
        self, domain: str, entity_id: str, state: str, at: datetime
    ) -> WorkflowSnapshot:
        try:
            with self._session() as session:
                if self._select_state(session, domain, entity_id) is not None:
                    raise EntityAlreadyExistsError(domain, entity_id)
                row = WorkflowStateModel(
                    domain=domain,
                    entity_id=entity_id,
                    current_state=state,
                    version=0,
                    created_at=at,
                    updated_at=at,
                )
                session.add(row)
                session.flush()
                return row.to_snapshot()
        except IntegrityError as exc:
            raise EntityAlreadyExistsError(domain, entity_id) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("workflow.initialize", str(exc)) from exc

    def history(
        self,
        domain: str,
        entity_id: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[TransitionRecord, ...]:
        stmt = (
            select(WorkflowTransitionModel)
            .where(
                WorkflowTransitionModel.domain == domain,
                WorkflowTransitionModel.entity_id == entity_id,
            )
            .order_by(WorkflowTransitionModel.version)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self._session() as session:
                return tuple(row.to_record() for row in session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("workflow.history", str(exc)) from exc


class SqlAuditStore(_SqlStore):
    DEFAULT_MAX_RETRIES = 5

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(session_factory)
        self._max_retries = max_retries

    def append(self, resource_type: str, resource_id: str, seal: SealFn) -> AuditLogEntry:
        for attempt in range(1, self._max_retries + 1):
            try:
                with self._session() as session:
                    last = session.execute(
                        select(AuditEntryModel)
                        .where(
                            AuditEntryModel.resource_type == resource_type,
                            AuditEntryModel.resource_id == resource_id,
                        )
                        .order_by(AuditEntryModel.position.desc())
                        .limit(1)
                        .with_for_update()
                    ).scalar_one_or_none()
                    head = None
                    if last is not None:
                        head = ChainHead(
                            position=last.position,
                            current_hash=last.current_hash,
                            chain_hash=last.chain_hash,
                        )
                    entry = seal(head)
                    session.add(AuditEntryModel.from_entry(entry))
                    session.flush()
                return entry
            except IntegrityError:
                logger.debug(
                    "audit_append_position_retry",
                    extra={"resource_type": resource_type,
                           "resource_id": resource_id, "attempt": attempt},
                )
            except SQLAlchemyError as exc:
                raise StoreUnavailableError("audit.append", str(exc)) from exc
        raise StoreUnavailableError(
            "audit.append",
            f"chain position contention for {resource_type} {resource_id} "
            f"after {self._max_retries} attempts",
        )

    def chain(self, resource_type: str, resource_id: str) -> tuple[AuditLogEntry, ...]:
        stmt = (
            select(AuditEntryModel)
            .where(
                AuditEntryModel.resource_type == resource_type,
                AuditEntryModel.resource_id == resource_id,
            )
            .order_by(AuditEntryModel.position)
        )
        try:
            with self._session() as session:
                return tuple(row.to_entry() for row in session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("audit.chain", str(exc)) from exc

    @staticmethod
    def _filtered(stmt: Select, query: AuditQuery) -> Select:
        if query.event_types:
            stmt = stmt.where(
                AuditEntryModel.event_type.in_([t.value for t in query.event_types])
            )
        if query.resource_types:
            stmt = stmt.where(AuditEntryModel.resource_type.in_(query.resource_types))
        if query.resource_id is not None:
            stmt = stmt.where(AuditEntryModel.resource_id == query.resource_id)
        if query.actor_id is not None:
            stmt = stmt.where(AuditEntryModel.actor_id == query.actor_id)
        if query.actor_role is not None:
            stmt = stmt.where(AuditEntryModel.actor_role == query.actor_role)
        if query.action:
            stmt = stmt.where(AuditEntryModel.action.ilike(f"%{query.action}%"))
        if query.start is not None:
            stmt = stmt.where(AuditEntryModel.timestamp >= as_utc(query.start))
        if query.end is not None:
            stmt = stmt.where(AuditEntryModel.timestamp <= as_utc(query.end))
        if query.archived is not None:
            stmt = stmt.where(AuditEntryModel.archived == query.archived)
        return stmt

    def query(self, query: AuditQuery) -> AuditPage:
        rows_stmt = (
            self._filtered(select(AuditEntryModel), query)
            .order_by(AuditEntryModel.timestamp.desc(), AuditEntryModel.position.desc())
            .offset(query.offset)
            .limit(query.limit)
        )
        count_stmt = self._filtered(
            select(func.count()).select_from(AuditEntryModel), query
        )
        try:
            with self._session() as session:
                total = session.execute(count_stmt).scalar_one()
                entries = tuple(
                    row.to_entry() for row in session.execute(rows_stmt).scalars()
                )
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("audit.query", str(exc)) from exc
        return AuditPage(entries=entries, total=total, limit=query.limit, offset=query.offset)

    def archive_before(self, cutoff: datetime, archived_at: datetime) -> int:
        try:
            with self._session() as session:
                result = session.execute(
                    update(AuditEntryModel)
                    .where(
                        AuditEntryModel.timestamp < as_utc(cutoff),
                        AuditEntryModel.archived.is_(False),
                    )
                    .values(archived=True, archive_date=archived_at)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("audit.archive", str(exc)) from exc

    def statistics(self) -> ArchiveStatistics:
        stmt = select(
            func.count(AuditEntryModel.id),
            func.coalesce(
                func.sum(case((AuditEntryModel.archived.is_(True), 1), else_=0)), 0
            ),
            func.min(AuditEntryModel.timestamp),
            func.max(AuditEntryModel.timestamp),
        )
        try:
            with self._session() as session:
                total, archived, oldest, newest = session.execute(stmt).one()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("audit.statistics", str(exc)) from exc
        return ArchiveStatistics(
            total=total,
            active=total - archived,
            archived=archived,
            oldest=as_utc(oldest),
            newest=as_utc(newest),
        )


class SqlHandoffStore(_SqlStore):
    def record(self, handoff: WorkflowHandoff) -> WorkflowHandoff:
        try:
            with self._session() as session:
                session.add(WorkflowHandoffModel.from_handoff(handoff))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("handoff.record", str(exc)) from exc
        return handoff

    def mark(
        self,
        handoff_id: UUID,
        status: HandoffStatus,
        at: datetime,
        error: str | None = None,
    ) -> WorkflowHandoff:
        try:
            with self._session() as session:
                row = session.get(WorkflowHandoffModel, handoff_id)
                if row is None:
                    raise KeyError(handoff_id)
                row.status = status.value
                row.processed_at = at
                row.error = error
                session.flush()
                return row.to_handoff()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("handoff.mark", str(exc)) from exc

    def _select(self, *criteria) -> tuple[WorkflowHandoff, ...]:
        stmt = (
            select(WorkflowHandoffModel)
            .where(*criteria)
            .order_by(WorkflowHandoffModel.created_at)
        )
        try:
            with self._session() as session:
                return tuple(row.to_handoff() for row in session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("handoff.select", str(exc)) from exc

    def for_entity(self, entity_id: str) -> tuple[WorkflowHandoff, ...]:
        return self._select(WorkflowHandoffModel.entity_id == entity_id)

    def pending(self) -> tuple[WorkflowHandoff, ...]:
        return self._select(WorkflowHandoffModel.status == HandoffStatus.PENDING.value)
