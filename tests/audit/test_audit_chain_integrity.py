"""
Audit hash chain sealing and verification.

Every entry's content hash covers its business fields plus the previous
entry's hash; the chain hash folds the running chain into each entry.
Verification recomputes both from stored fields, so any edit, deletion or
re-ordering of stored entries is reported.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from landreg_kernel.domain.audit import AuditEventDraft, AuditEventType, AuditQuery
from landreg_kernel.exceptions import (
    AuditChainBrokenError,
    AuditChainGapError,
    InvalidAuditEventError,
    InvalidQueryError,
)
from landreg_kernel.services.audit_ledger import MAX_QUERY_LIMIT, AuditLedger
from landreg_kernel.utils.hashing import hash_chain_link

RESOURCE = ("sectional_title", "ST-1")


def _draft(action="view_title", resource_id="ST-1", **overrides) -> AuditEventDraft:
    fields = dict(
        event_type=AuditEventType.VIEW,
        resource_type="sectional_title",
        resource_id=resource_id,
        actor_id="clerk-7",
        action=action,
        description=f"{action} on {resource_id}",
    )
    fields.update(overrides)
    return AuditEventDraft(**fields)


def _chain_of(ledger, count=3):
    return [ledger.append(_draft(action=f"step_{n}")) for n in range(count)]


class TestSealing:

    def test_first_entry(self, ledger):
        entry = ledger.append(_draft())
        assert entry.position == 0
        assert entry.previous_hash is None
        assert entry.chain_hash == entry.current_hash
        assert len(entry.current_hash) == 64

    def test_entries_link_to_predecessor(self, ledger):
        first, second, third = _chain_of(ledger)
        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [e.position for e in (first, second, third)] == [0, 1, 2]
        assert third.chain_hash == hash_chain_link(third.current_hash, second.chain_hash)

    def test_chains_are_per_resource(self, ledger):
        ledger.append(_draft(resource_id="ST-1"))
        other = ledger.append(_draft(resource_id="ST-2"))
        assert other.position == 0
        assert other.previous_hash is None

    def test_recompute_hash_matches_stored(self, ledger):
        first, second = _chain_of(ledger, 2)
        assert AuditLedger.recompute_hash(second, first.current_hash) == second.current_hash

    def test_draft_hash_matches_sealed_entry(self, ledger, clock):
        at = clock.now()
        draft = _draft(timestamp=at, changes={"b": 1, "a": [1, 2]})
        entry = ledger.append(draft)
        assert AuditLedger.recompute_hash(draft, None) == entry.current_hash

    def test_timestamp_defaults_to_clock(self, ledger):
        entry = ledger.append(_draft())
        assert entry.timestamp.tzinfo is not None

    def test_string_event_type_accepted(self, ledger):
        entry = ledger.append(_draft(event_type="EXPORT"))
        assert entry.event_type == AuditEventType.EXPORT

    def test_unknown_event_type_rejected(self, ledger):
        with pytest.raises(InvalidAuditEventError):
            ledger.append(_draft(event_type="teleport"))

    @pytest.mark.parametrize("overrides", [
        {"changes": {"before": {"fee": Decimal("1")}}},
        {"metadata": {"scanned_by": object()}},
    ])
    def test_payload_must_be_json(self, ledger, overrides):
        with pytest.raises(InvalidAuditEventError) as exc_info:
            ledger.append(_draft(**overrides))
        assert exc_info.value.resource_id == "ST-1"
        assert ledger.chain(*RESOURCE) == ()

    def test_append_logged(self, ledger, captured_logs):
        entry = ledger.append(_draft())
        record = next(r for r in captured_logs() if r["message"] == "audit_entry_appended")
        assert record["audit_entry_id"] == str(entry.id)
        assert record["position"] == 0


class TestVerification:

    def test_empty_chain_is_valid(self, ledger):
        report = ledger.verify_integrity(*RESOURCE)
        assert report.valid
        assert report.entry_count == 0

    def test_untouched_chain_is_valid(self, ledger):
        _chain_of(ledger, 5)
        report = ledger.verify_integrity(*RESOURCE)
        assert report.valid
        assert not report.tamper_detected
        assert report.missing_entries == 0
        assert report.entry_count == 5

    def test_edited_description_is_tampering(self, ledger, audit_store, captured_logs):
        _chain_of(ledger)
        stored = audit_store._chains[RESOURCE]
        stored[1] = replace(stored[1], description="nothing to see here")

        report = ledger.verify_integrity(*RESOURCE)
        assert not report.valid
        assert report.tamper_detected
        assert report.missing_entries == 0
        assert report.first_broken_entry == stored[1].id

        broken = [r for r in captured_logs() if r["message"] == "audit_chain_broken"]
        assert broken[0]["level"] == "CRITICAL"

    def test_edited_actor_is_tampering(self, ledger, audit_store):
        _chain_of(ledger)
        stored = audit_store._chains[RESOURCE]
        stored[0] = replace(stored[0], actor_id="someone-else")
        assert ledger.verify_integrity(*RESOURCE).tamper_detected

    def test_edited_timestamp_is_tampering(self, ledger, audit_store):
        _chain_of(ledger)
        stored = audit_store._chains[RESOURCE]
        stored[2] = replace(stored[2], timestamp=stored[2].timestamp - timedelta(days=1))
        assert ledger.verify_integrity(*RESOURCE).tamper_detected

    def test_rewritten_chain_hash_is_tampering(self, ledger, audit_store):
        _chain_of(ledger)
        stored = audit_store._chains[RESOURCE]
        stored[2] = replace(stored[2], chain_hash="0" * 64)
        report = ledger.verify_integrity(*RESOURCE)
        assert report.tamper_detected
        assert report.missing_entries == 0

    def test_deleted_entry_is_a_gap(self, ledger, audit_store):
        _chain_of(ledger, 4)
        del audit_store._chains[RESOURCE][1]

        report = ledger.verify_integrity(*RESOURCE)
        assert not report.valid
        assert not report.tamper_detected
        assert report.missing_entries == 1

    def test_deleted_first_entry_is_a_gap(self, ledger, audit_store):
        _chain_of(ledger, 3)
        del audit_store._chains[RESOURCE][0]
        report = ledger.verify_integrity(*RESOURCE)
        assert report.missing_entries == 1
        assert not report.tamper_detected

    def test_two_deleted_entries_counted(self, ledger, audit_store):
        _chain_of(ledger, 5)
        del audit_store._chains[RESOURCE][1:3]
        assert ledger.verify_integrity(*RESOURCE).missing_entries == 2

    def test_archive_flags_do_not_break_chain(self, ledger, audit_store):
        _chain_of(ledger)
        archived_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        audit_store.archive_before(archived_at, archived_at)
        assert all(e.archived for e in ledger.chain(*RESOURCE))
        assert ledger.verify_integrity(*RESOURCE).valid

    def test_report_to_dict(self, ledger):
        _chain_of(ledger, 2)
        data = ledger.verify_integrity(*RESOURCE).to_dict()
        assert data["valid"] is True
        assert data["entry_count"] == 2
        assert data["errors"] == []


class TestAssertIntegrity:

    def test_valid_chain_returns_report(self, ledger):
        _chain_of(ledger)
        assert ledger.assert_integrity(*RESOURCE).valid

    def test_tampering_raises_broken(self, ledger, audit_store):
        _chain_of(ledger)
        stored = audit_store._chains[RESOURCE]
        original_hash = stored[1].current_hash
        stored[1] = replace(stored[1], description="edited")

        with pytest.raises(AuditChainBrokenError) as exc_info:
            ledger.assert_integrity(*RESOURCE)
        assert exc_info.value.audit_entry_id == str(stored[1].id)
        assert exc_info.value.actual_hash == original_hash
        assert exc_info.value.code == "AUDIT_CHAIN_BROKEN"

    def test_gap_raises_gap(self, ledger, audit_store):
        _chain_of(ledger)
        del audit_store._chains[RESOURCE][1]
        with pytest.raises(AuditChainGapError) as exc_info:
            ledger.assert_integrity(*RESOURCE)
        assert exc_info.value.missing_entries == 1


class TestQuery:

    def test_filters(self, ledger):
        ledger.append(_draft(actor_role="clerk"))
        ledger.append(_draft(event_type=AuditEventType.EXPORT, action="export_title"))
        ledger.append(_draft(resource_id="ST-2"))

        exports = ledger.query(AuditQuery(event_types=(AuditEventType.EXPORT,)))
        assert [e.action for e in exports.entries] == ["export_title"]

        st1 = ledger.query(AuditQuery(resource_id="ST-1"))
        assert st1.total == 2

        clerks = ledger.query(AuditQuery(actor_role="clerk"))
        assert clerks.total == 1

    def test_action_substring_match(self, ledger):
        ledger.append(_draft(action="export_title_deed"))
        ledger.append(_draft(action="view_title"))
        assert ledger.query(AuditQuery(action="EXPORT")).total == 1

    def test_date_range(self, ledger, clock):
        first = ledger.append(_draft())
        clock.advance(3600)
        second = ledger.append(_draft())
        page = ledger.query(AuditQuery(start=first.timestamp + timedelta(seconds=1)))
        assert [e.id for e in page.entries] == [second.id]
        page = ledger.query(AuditQuery(end=first.timestamp))
        assert [e.id for e in page.entries] == [first.id]

    def test_naive_bounds_are_read_as_utc(self, ledger, clock):
        first = ledger.append(_draft())
        clock.advance(3600)
        second = ledger.append(_draft())
        naive_start = (first.timestamp + timedelta(seconds=1)).replace(tzinfo=None)
        page = ledger.query(AuditQuery(start=naive_start))
        assert [e.id for e in page.entries] == [second.id]
        assert page.total == 1

    def test_paging(self, ledger):
        _chain_of(ledger, 5)
        page = ledger.query(AuditQuery(limit=2, offset=2))
        assert page.total == 5
        assert [e.position for e in page.entries] == [2, 1]
        assert page.has_more
        assert not ledger.query(AuditQuery(limit=2, offset=4)).has_more

    @pytest.mark.parametrize("query", [
        AuditQuery(limit=0),
        AuditQuery(limit=MAX_QUERY_LIMIT + 1),
        AuditQuery(offset=-1),
        AuditQuery(
            start=datetime(2024, 2, 1, tzinfo=timezone.utc),
            end=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ),
    ])
    def test_invalid_queries(self, ledger, query):
        with pytest.raises(InvalidQueryError):
            ledger.query(query)
