"""
WorkflowManager transition execution.

Covers the full check order (input, load, state conflict, terminal, role,
legality, compare-and-swap), the audit entry written for every commit, and
the rule that an audit failure never rolls a committed transition back.
"""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from landreg_kernel.domain.audit import AuditEventType
from landreg_kernel.domain.records import CommitResult
from landreg_kernel.exceptions import (
    EntityAlreadyExistsError,
    EntityNotFoundError,
    InvalidQueryError,
    InvalidTransitionRequestError,
    RoleNotHeldError,
    StateConflictError,
    StoreUnavailableError,
    TerminalStateError,
    TransitionNotPermittedError,
    UnknownDomainError,
    UnknownStateError,
    VersionConflictError,
)
from landreg_kernel.services.audit_ledger import AuditLedger
from landreg_kernel.services.workflow_manager import WorkflowManager
from landreg_kernel.stores.memory import InMemoryWorkflowStore


@dataclass
class FailingAuditStore:
    """Audit store whose appends always fail."""
    error: Exception

    def append(self, resource_type, resource_id, seal):
        raise self.error

    def chain(self, resource_type, resource_id):
        return ()


class StaleWorkflowStore(InMemoryWorkflowStore):
    """Reports every commit as a lost race against version 7."""

    def commit(self, domain, entity_id, expected_version, new_state, record):
        return CommitResult(committed=False, version=7)


class BrokenWorkflowStore(InMemoryWorkflowStore):
    def load(self, domain, entity_id):
        raise StoreUnavailableError("workflow.load", "connection refused")


def _submit(manager, actor, entity_id="SCHEME-1"):
    return manager.transition("planning", entity_id, "draft", "submitted", actor("planner-1"))


def _approve(manager, actor, entity_id="SCHEME-1"):
    _submit(manager, actor, entity_id)
    return manager.transition(
        "planning", entity_id, "submitted", "approved", actor("authority-1")
    )


class TestSuccessfulTransitions:

    def test_planner_submits_new_scheme(self, manager, actor):
        outcome = _submit(manager, actor)

        assert outcome.success
        assert outcome.new_state == "submitted"
        assert outcome.version == 1
        assert outcome.transition.from_state == "draft"
        assert outcome.transition.user_id == "planner-1"
        assert outcome.transition.user_role == "planner"
        assert outcome.audited

    def test_current_state_after_submit(self, manager, actor):
        _submit(manager, actor)
        position = manager.get_current_state("planning", "SCHEME-1")
        assert position.state == "submitted"
        assert position.display_status == "submitted"
        assert position.version == 1
        assert not position.is_terminal

    def test_review_cycle(self, manager, actor):
        authority = actor("authority-1")
        planner = actor("planner-1")
        steps = [
            ("draft", "submitted", planner),
            ("submitted", "under_review", authority),
            ("under_review", "revision_requested", authority),
            ("revision_requested", "submitted", planner),
            ("submitted", "approved", authority),
        ]
        for from_state, to_state, who in steps:
            outcome = manager.transition("planning", "SCHEME-7", from_state, to_state, who)
            assert outcome.success, outcome.error_message

        position = manager.get_current_state("planning", "SCHEME-7")
        assert position.state == "approved"
        assert position.display_status == "approved_planning_authority"
        assert position.is_terminal
        assert position.version == len(steps)

    def test_history_is_ordered_with_consecutive_versions(self, manager, actor):
        _approve(manager, actor)
        history = manager.get_history("planning", "SCHEME-1")
        assert [r.version for r in history] == [1, 2]
        assert [(r.from_state, r.to_state) for r in history] == [
            ("draft", "submitted"),
            ("submitted", "approved"),
        ]
        assert history[0].timestamp < history[1].timestamp

    def test_history_pagination(self, manager, actor):
        _approve(manager, actor)
        assert [r.version for r in manager.get_history("planning", "SCHEME-1", offset=1)] == [2]
        assert [r.version for r in manager.get_history("planning", "SCHEME-1", limit=1)] == [1]

    def test_history_of_unknown_entity_is_empty(self, manager):
        assert manager.get_history("planning", "NOPE") == ()

    def test_bad_history_pagination(self, manager):
        with pytest.raises(InvalidQueryError):
            manager.get_history("planning", "SCHEME-1", offset=-1)
        with pytest.raises(InvalidQueryError):
            manager.get_history("planning", "SCHEME-1", limit=0)

    def test_reason_and_metadata_recorded(self, manager, actor, ledger):
        outcome = manager.transition(
            "planning", "SCHEME-2", "draft", "withdrawn", actor("planner-1"),
            reason="duplicate lodgement", metadata={"ticket": 42},
        )
        assert outcome.transition.reason == "duplicate lodgement"
        assert outcome.transition.metadata == {"ticket": 42}

        entry = ledger.chain("planning_plan", "SCHEME-2")[0]
        assert entry.metadata["reason"] == "duplicate lodgement"
        assert entry.metadata["transition"] == {"ticket": 42}

    def test_bypass_role_skips_intermediate_states(self, manager, actor):
        outcome = manager.transition(
            "planning", "SCHEME-3", "draft", "approved", actor("admin-1")
        )
        assert outcome.success
        assert outcome.transition.user_role == "admin"

    def test_deeds_registration_chain(self, manager, actor):
        steps = [
            ("draft", "submitted", actor("conveyancer-1")),
            ("submitted", "under_examination", actor("examiner-1")),
            ("under_examination", "approved", actor("examiner-1")),
            ("approved", "registered", actor("registrar-1")),
        ]
        for from_state, to_state, who in steps:
            assert manager.transition("deeds", "ST-1", from_state, to_state, who).success
        assert manager.get_current_state("deeds", "ST-1").display_status == "registered"


class TestPlanningScenario:

    def test_submit_deny_approve_then_absorb(self, manager, actor, ledger):
        planner, authority = actor("planner-1"), actor("authority-1")

        submitted = manager.transition("planning", "P1", "draft", "submitted", planner)
        assert submitted.success and submitted.version == 1

        denied = manager.transition("planning", "P1", "submitted", "approved", planner)
        assert denied.error_code == "TRANSITION_NOT_PERMITTED"

        approved = manager.transition("planning", "P1", "submitted", "approved", authority)
        assert approved.success and approved.version == 2
        assert manager.get_current_state("planning", "P1").is_terminal

        for target in ("draft", "submitted", "withdrawn"):
            for who in (planner, authority, actor("admin-1")):
                outcome = manager.transition("planning", "P1", "approved", target, who)
                assert outcome.error_code == "TERMINAL_STATE"

        report = ledger.verify_integrity("planning_plan", "P1")
        assert report.valid
        assert report.entry_count == 2
        first, second = ledger.chain("planning_plan", "P1")
        assert second.previous_hash == first.current_hash


class TestAuditOfTransitions:

    def test_audit_entry_describes_transition(self, manager, actor, ledger):
        outcome = _submit(manager, actor)
        entry = outcome.audit_entry

        assert entry.resource_type == "planning_plan"
        assert entry.resource_id == "SCHEME-1"
        assert entry.event_type == AuditEventType.UPDATE
        assert entry.action == "workflow_transition"
        assert entry.actor_role == "planner"
        assert entry.changes == {
            "before": {"state": "draft", "version": 0},
            "after": {"state": "submitted", "version": 1},
        }
        assert entry.timestamp == outcome.transition.timestamp
        assert ledger.chain("planning_plan", "SCHEME-1") == (entry,)

    def test_approval_is_an_approve_event(self, manager, actor):
        outcome = _approve(manager, actor)
        assert outcome.audit_entry.event_type == AuditEventType.APPROVE
        assert outcome.audit_entry.position == 1

    def test_seal_is_a_seal_event(self, manager, actor):
        manager.transition("survey", "SP-1", "draft", "computed", actor("surveyor-1"))
        outcome = manager.transition("survey", "SP-1", "computed", "sealed", actor("sg-1"))
        assert outcome.audit_entry.event_type == AuditEventType.SEAL

    def test_chain_stays_valid_across_transitions(self, manager, actor, ledger):
        _approve(manager, actor)
        assert ledger.verify_integrity("planning_plan", "SCHEME-1").valid

    def test_audit_failure_keeps_transition(self, table, authorization, clock, actor, captured_logs):
        store = InMemoryWorkflowStore()
        manager = WorkflowManager(
            table, store, authorization,
            audit_ledger=AuditLedger(FailingAuditStore(RuntimeError("disk full")), clock),
            clock=clock,
        )
        outcome = manager.transition("planning", "S-9", "draft", "submitted", actor("planner-1"))

        assert outcome.success
        assert not outcome.audited
        assert store.load("planning", "S-9").current_state == "submitted"
        assert any(r["message"] == "audit_append_failed" for r in captured_logs())

    def test_without_ledger_nothing_is_audited(self, table, authorization, clock, actor):
        manager = WorkflowManager(table, InMemoryWorkflowStore(), authorization, clock=clock)
        outcome = manager.transition("planning", "S-1", "draft", "submitted", actor("planner-1"))
        assert outcome.success
        assert outcome.audit_entry is None


class TestRejectedTransitions:

    def test_role_may_not_make_transition(self, manager, actor):
        _submit(manager, actor)
        outcome = manager.transition(
            "planning", "SCHEME-1", "submitted", "approved", actor("planner-1")
        )
        assert not outcome.success
        assert outcome.error_code == "TRANSITION_NOT_PERMITTED"
        assert outcome.details["allowed"] == ["withdrawn"]
        assert "withdrawn" in outcome.error_message

    def test_rejected_transition_changes_nothing(self, manager, actor, ledger):
        _submit(manager, actor)
        manager.transition("planning", "SCHEME-1", "submitted", "approved", actor("planner-1"))
        assert manager.get_current_state("planning", "SCHEME-1").version == 1
        assert len(ledger.chain("planning_plan", "SCHEME-1")) == 1

    def test_stale_from_state(self, manager, actor):
        _submit(manager, actor)
        with pytest.raises(StateConflictError) as exc_info:
            manager.commit_transition(
                "planning", "SCHEME-1", "draft", "withdrawn", actor("planner-1")
            )
        assert exc_info.value.actual_state == "submitted"

    def test_terminal_state_even_for_bypass(self, manager, actor):
        _approve(manager, actor)
        with pytest.raises(TerminalStateError):
            manager.commit_transition(
                "planning", "SCHEME-1", "approved", "draft", actor("admin-1")
            )

    def test_role_not_held(self, manager, actor):
        with pytest.raises(RoleNotHeldError) as exc_info:
            manager.commit_transition(
                "planning", "SCHEME-1", "draft", "submitted",
                actor("planner-1", "planning_authority"),
            )
        assert exc_info.value.role == "planning_authority"

    def test_claimed_admin_without_assignment(self, manager, actor):
        outcome = manager.transition(
            "planning", "SCHEME-1", "draft", "approved", actor("planner-1", "admin")
        )
        assert outcome.error_code == "ROLE_NOT_HELD"

    def test_not_permitted(self, manager, actor):
        with pytest.raises(TransitionNotPermittedError) as exc_info:
            manager.commit_transition(
                "planning", "SCHEME-1", "draft", "approved", actor("planner-1")
            )
        assert exc_info.value.allowed == ("submitted", "withdrawn")

    def test_unknown_domain(self, manager, actor):
        with pytest.raises(UnknownDomainError):
            manager.commit_transition("mining", "M-1", "draft", "submitted", actor("planner-1"))

    def test_unknown_state(self, manager, actor):
        outcome = manager.transition("planning", "S-1", "draft", "lodged", actor("planner-1"))
        assert outcome.error_code == "UNKNOWN_STATE"

    def test_same_state(self, manager, actor):
        with pytest.raises(InvalidTransitionRequestError):
            manager.commit_transition("planning", "S-1", "draft", "draft", actor("admin-1"))

    def test_empty_entity_id(self, manager, actor):
        outcome = manager.transition("planning", "", "draft", "submitted", actor("planner-1"))
        assert outcome.error_code == "INVALID_TRANSITION_REQUEST"

    @pytest.mark.parametrize("metadata", [
        {"fee": Decimal("1.5")},
        {"parcel": object()},
    ])
    def test_metadata_must_be_json(self, manager, actor, ledger, metadata):
        outcome = manager.transition(
            "planning", "SCHEME-1", "draft", "submitted", actor("planner-1"), metadata=metadata
        )
        assert not outcome.success
        assert outcome.error_code == "INVALID_TRANSITION_REQUEST"
        assert "JSON" in outcome.error_message
        assert manager.get_history("planning", "SCHEME-1") == ()
        assert ledger.chain("planning_plan", "SCHEME-1") == ()

    def test_lost_race_is_version_conflict(self, table, authorization, clock, actor):
        manager = WorkflowManager(table, StaleWorkflowStore(), authorization, clock=clock)
        with pytest.raises(VersionConflictError) as exc_info:
            manager.commit_transition("planning", "S-1", "draft", "submitted", actor("planner-1"))
        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 7

    def test_store_failure_reported(self, table, authorization, clock, actor, captured_logs):
        manager = WorkflowManager(table, BrokenWorkflowStore(), authorization, clock=clock)
        outcome = manager.transition("planning", "S-1", "draft", "submitted", actor("planner-1"))
        assert outcome.error_code == "STORE_UNAVAILABLE"
        rejected = [r for r in captured_logs() if r["message"] == "workflow_transition_rejected"]
        assert rejected[0]["level"] == "ERROR"


class TestLifecycleAndQueries:

    def test_initialize(self, manager):
        position = manager.initialize("survey", "SP-5")
        assert position.state == "draft"
        assert position.version == 0
        assert manager.get_current_state("survey", "SP-5") == position

    def test_initialize_twice(self, manager):
        manager.initialize("survey", "SP-5")
        with pytest.raises(EntityAlreadyExistsError):
            manager.initialize("survey", "SP-5")

    def test_initialized_entity_transitions_from_version_zero(self, manager, actor):
        manager.initialize("survey", "SP-5")
        outcome = manager.transition("survey", "SP-5", "draft", "computed", actor("surveyor-1"))
        assert outcome.version == 1

    def test_unknown_entity(self, manager):
        with pytest.raises(EntityNotFoundError):
            manager.get_current_state("deeds", "ST-404")

    def test_valid_next_states(self, manager):
        assert manager.valid_next_states("planning", "draft", "planner") == {"submitted", "withdrawn"}
        assert manager.valid_next_states("planning", "draft", "surveyor") == frozenset()
        assert manager.valid_next_states("planning", "approved", "admin") == frozenset()
        assert manager.valid_next_states("planning", "draft", "admin") == {
            "submitted", "under_review", "revision_requested", "approved",
            "rejected", "withdrawn",
        }

    def test_transition_logs(self, manager, actor, captured_logs):
        _submit(manager, actor)
        manager.transition("planning", "SCHEME-1", "submitted", "approved", actor("planner-1"))

        traces = [r for r in captured_logs() if r["message"] == "workflow_transition"]
        assert [t["outcome"] for t in traces] == ["success", "TRANSITION_NOT_PERMITTED"]
        assert traces[0]["version"] == 1
        assert traces[0]["audited"] is True
        assert traces[0]["domain"] == "planning"
        assert traces[0]["entity_id"] == "SCHEME-1"
        assert "duration_ms" in traces[1]
