"""
AuditLedger -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Seals audit events into per-resource hash chains, answers filtered
    queries over the trail, and verifies chains for tampering or gaps.

Architecture position:
    Kernel > Services -- imperative shell over an ``AuditStore``. Called by
    the WorkflowManager after every committed transition and directly by the
    public service surface for non-workflow events (views, exports, logins).

Invariants enforced:
    - For entry N of a ``(resource_type, resource_id)`` chain:
      ``previous_hash == entries[N-1].current_hash`` and
      ``chain_hash == H(entries[N-1].chain_hash + ":" + current_hash)``.
      The first entry has no previous hash and ``chain_hash == current_hash``.
    - ``current_hash`` covers every business field (see
      ``AuditLogEntry.hash_fields``) and is recomputable from stored columns.
    - Sealing happens inside the store's per-resource exclusion, so two
      concurrent appends can never link to the same predecessor.

Failure modes:
    - Store errors propagate (StoreUnavailableError).
    - ``assert_integrity`` raises AuditChainBrokenError (hash mismatch) or
      AuditChainGapError (broken previous-hash link).
    - ``query`` raises InvalidQueryError for bad pagination or date ranges.
    - ``append`` raises InvalidAuditEventError for an unknown event type or
      changes/metadata that cannot be represented as JSON.

Audit relevance:
    This IS the audit service. Verification never trusts stored hashes: it
    recomputes every one from the stored business fields.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any
from uuid import uuid4

from landreg_kernel.domain.audit import (
    AuditEventDraft,
    AuditEventType,
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    ChainHead,
    IntegrityReport,
    hash_fields_of,
)
from landreg_kernel.domain.clock import Clock, SystemClock
from landreg_kernel.domain.records import Actor, TransitionRecord
from landreg_kernel.domain.workflow import WorkflowDefinition
from landreg_kernel.exceptions import (
    AuditChainBrokenError,
    AuditChainGapError,
    InvalidAuditEventError,
    InvalidQueryError,
)
from landreg_kernel.logging_config import LogContext, get_logger
from landreg_kernel.stores.base import AuditStore
from landreg_kernel.utils.hashing import (
    hash_audit_entry,
    hash_chain_link,
    normalize_json,
)

logger = get_logger("services.audit_ledger")

MAX_QUERY_LIMIT = 1000
TRANSITION_ACTION = "workflow_transition"


class AuditLedger:
    """
    Appends to, queries and verifies the audit hash chains.

    Contract:
        ``append`` returns the sealed entry exactly as stored. Entries are
        never modified by the ledger; archival is the archiver's concern.
    """

    def __init__(self, store: AuditStore, clock: Clock | None = None):
        self._store = store
        self._clock = clock or SystemClock()

    # =========================================================================
    # Write path
    # =========================================================================

    def append(self, draft: AuditEventDraft) -> AuditLogEntry:
        """
        Seal ``draft`` onto the end of its resource chain.

        The timestamp defaults to the injected clock. ``changes`` and
        ``metadata`` are normalized to plain JSON before hashing so the
        digest survives a round trip through a JSON column.
        """
        draft_timestamp = draft.timestamp or self._clock.now()
        try:
            event_type = AuditEventType.parse(draft.event_type)
            changes = normalize_json(dict(draft.changes)) if draft.changes is not None else None
            metadata = normalize_json(dict(draft.metadata)) if draft.metadata is not None else None
        except (TypeError, ValueError) as exc:
            raise InvalidAuditEventError(
                draft.resource_type, draft.resource_id, str(exc)
            ) from exc

        def seal(head: ChainHead | None) -> AuditLogEntry:
            unsealed = AuditLogEntry(
                id=uuid4(),
                event_type=event_type,
                resource_type=draft.resource_type,
                resource_id=draft.resource_id,
                actor_id=draft.actor_id,
                actor_name=draft.actor_name,
                actor_role=draft.actor_role,
                action=draft.action,
                description=draft.description,
                changes=changes,
                metadata=metadata,
                ip_address=draft.ip_address,
                user_agent=draft.user_agent,
                timestamp=draft_timestamp,
                position=0 if head is None else head.position + 1,
                previous_hash=None if head is None else head.current_hash,
                current_hash="",
                chain_hash="",
            )
            current_hash = hash_audit_entry(
                unsealed.hash_fields(), unsealed.previous_hash
            )
            chain_hash = hash_chain_link(
                current_hash, None if head is None else head.chain_hash
            )
            return replace(unsealed, current_hash=current_hash, chain_hash=chain_hash)

        entry = self._store.append(draft.resource_type, draft.resource_id, seal)

        logger.info(
            "audit_entry_appended",
            extra={
                "audit_entry_id": str(entry.id),
                "event_type": entry.event_type.value,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
                "position": entry.position,
                "current_hash": entry.current_hash,
            },
        )
        return entry

    def record_transition(
        self,
        definition: WorkflowDefinition,
        record: TransitionRecord,
        actor: Actor,
    ) -> AuditLogEntry:
        """Append the audit entry for a committed workflow transition."""
        metadata: dict[str, Any] = {
            "domain": record.domain,
            "version": record.version,
        }
        if record.reason:
            metadata["reason"] = record.reason
        if record.metadata:
            metadata["transition"] = dict(record.metadata)

        draft = AuditEventDraft(
            event_type=AuditEventType.parse(
                definition.audit_event_type_for(record.to_state)
            ),
            resource_type=definition.resource_type,
            resource_id=record.entity_id,
            actor_id=actor.user_id,
            actor_name=actor.name,
            actor_role=record.user_role,
            action=TRANSITION_ACTION,
            description=(
                f"{definition.name} {record.entity_id} moved from "
                f"{record.from_state} to {record.to_state}"
            ),
            changes={
                "before": {"state": record.from_state, "version": record.version - 1},
                "after": {"state": record.to_state, "version": record.version},
            },
            metadata=metadata,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            timestamp=record.timestamp,
        )
        return self.append(draft)

    # =========================================================================
    # Read path
    # =========================================================================

    def query(self, query: AuditQuery) -> AuditPage:
        """Filtered entries, newest first."""
        if query.limit < 1 or query.limit > MAX_QUERY_LIMIT:
            raise InvalidQueryError(f"limit must be between 1 and {MAX_QUERY_LIMIT}")
        if query.offset < 0:
            raise InvalidQueryError("offset must not be negative")
        if query.start and query.end and query.start > query.end:
            raise InvalidQueryError("start must not be after end")
        return self._store.query(query)

    def chain(self, resource_type: str, resource_id: str) -> tuple[AuditLogEntry, ...]:
        return self._store.chain(resource_type, resource_id)

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_integrity(self, resource_type: str, resource_id: str) -> IntegrityReport:
        """
        Recompute every hash in one resource chain.

        A recomputed ``current_hash`` or ``chain_hash`` that differs from the
        stored value is tampering. A ``previous_hash`` that does not point at
        the preceding entry (or a first entry with a predecessor) is a gap;
        ``missing_entries`` counts the skipped positions, at least one per
        broken link. The chain hash of an entry right after a gap cannot be
        checked and is skipped.
        """
        start = time.monotonic()
        entries = self._store.chain(resource_type, resource_id)

        errors: list[str] = []
        tamper_detected = False
        missing_entries = 0
        first_broken = None
        previous: AuditLogEntry | None = None

        for entry in entries:
            expected_position = 0 if previous is None else previous.position + 1
            expected_previous_hash = None if previous is None else previous.current_hash
            linked = (entry.previous_hash or None) == expected_previous_hash

            if not linked or entry.position != expected_position:
                missing_entries += max(1, entry.position - expected_position)
                errors.append(
                    f"entry {entry.id} at position {entry.position} does not link "
                    f"to its predecessor"
                )
                first_broken = first_broken or entry.id

            recomputed = hash_audit_entry(entry.hash_fields(), entry.previous_hash)
            if recomputed != entry.current_hash:
                tamper_detected = True
                errors.append(f"entry {entry.id} current hash mismatch")
                first_broken = first_broken or entry.id

            if linked:
                expected_chain = hash_chain_link(
                    entry.current_hash,
                    None if previous is None else previous.chain_hash,
                )
                if expected_chain != entry.chain_hash:
                    tamper_detected = True
                    errors.append(f"entry {entry.id} chain hash mismatch")
                    first_broken = first_broken or entry.id

            previous = entry

        valid = not tamper_detected and missing_entries == 0
        report = IntegrityReport(
            resource_type=resource_type,
            resource_id=resource_id,
            valid=valid,
            tamper_detected=tamper_detected,
            missing_entries=missing_entries,
            entry_count=len(entries),
            errors=tuple(errors),
            first_broken_entry=first_broken,
        )

        extra = {
            "entry_count": len(entries),
            "tamper_detected": tamper_detected,
            "missing_entries": missing_entries,
            "duration_ms": round((time.monotonic() - start) * 1000, 3),
        }
        with LogContext.bind(resource_type=resource_type, resource_id=resource_id):
            if valid:
                logger.info("audit_chain_valid", extra=extra)
            else:
                logger.critical(
                    "audit_chain_broken",
                    extra={**extra, "first_broken_entry": first_broken, "errors": errors},
                )
        return report

    def assert_integrity(self, resource_type: str, resource_id: str) -> IntegrityReport:
        """
        Verify and raise on the first kind of failure found.

        Raises:
            AuditChainBrokenError: A stored hash does not match.
            AuditChainGapError: Links are missing but hashes match.
        """
        report = self.verify_integrity(resource_type, resource_id)
        if report.tamper_detected:
            for entry in self._store.chain(resource_type, resource_id):
                expected = hash_audit_entry(entry.hash_fields(), entry.previous_hash)
                if expected != entry.current_hash:
                    raise AuditChainBrokenError(str(entry.id), expected, entry.current_hash)
            # Content hashes match, so a chain hash was altered
            raise AuditChainBrokenError(
                str(report.first_broken_entry), "chain hash", "mismatch"
            )
        if report.missing_entries:
            raise AuditChainGapError(resource_type, resource_id, report.missing_entries)
        return report

    @staticmethod
    def recompute_hash(entry: AuditEventDraft | AuditLogEntry, previous_hash: str | None) -> str:
        """Content hash an auditor would compute for ``entry``."""
        return hash_audit_entry(hash_fields_of(entry), previous_hash)

