"""
Structured log records emitted by the kernel.

Transition and audit records are asserted as operators read them: one JSON
object per line, with the bound request context (domain, entity, actor,
correlation id, audited resource) alongside the record's own fields.
"""

import logging
from dataclasses import replace
from decimal import Decimal
from io import StringIO

import pytest

from landreg_kernel.domain.audit import AuditEventDraft, AuditEventType
from landreg_kernel.domain.authorization import StaticRoleProvider
from landreg_kernel.domain.clock import DeterministicClock
from landreg_kernel.exceptions import StoreUnavailableError
from landreg_kernel.logging_config import (
    LogContext,
    configure_logging,
    get_logger,
    reset_logging,
)
from landreg_kernel.services.workflow_manager import WorkflowManager
from landreg_kernel.stores.memory import InMemoryWorkflowStore
from landreg_services import RequestContext, create_land_registry

RESOURCE = ("sectional_title", "ST-1")


class UnreachableWorkflowStore(InMemoryWorkflowStore):
    def load(self, domain, entity_id):
        raise StoreUnavailableError("workflow.load", "connection refused")


def _records(captured_logs, message):
    return [r for r in captured_logs() if r["message"] == message]


def _view_chain(ledger, count=3):
    return [
        ledger.append(AuditEventDraft(
            event_type=AuditEventType.VIEW,
            resource_type=RESOURCE[0],
            resource_id=RESOURCE[1],
            actor_id="clerk-7",
            action=f"view_{n}",
            description=f"title viewed ({n})",
        ))
        for n in range(count)
    ]


class TestTransitionRecords:

    def test_success_carries_context_and_timing(self, manager, actor, captured_logs):
        manager.transition("planning", "SCHEME-1", "draft", "submitted", actor("planner-1"))

        [trace] = _records(captured_logs, "workflow_transition")
        assert trace["level"] == "INFO"
        assert trace["logger"] == "landreg_kernel.services.workflow_manager"
        assert trace["domain"] == "planning"
        assert trace["entity_id"] == "SCHEME-1"
        assert trace["actor_id"] == "planner-1"
        assert trace["from_state"] == "draft"
        assert trace["to_state"] == "submitted"
        assert trace["role"] == "planner"
        assert trace["outcome"] == "success"
        assert trace["version"] == 1
        assert trace["audited"] is True
        assert isinstance(trace["duration_ms"], (int, float))
        assert trace["duration_ms"] >= 0

    def test_rejection_has_no_version(self, manager, actor, captured_logs):
        manager.transition("planning", "SCHEME-2", "draft", "approved", actor("planner-1"))

        [rejected] = _records(captured_logs, "workflow_transition_rejected")
        assert rejected["level"] == "WARNING"
        assert rejected["error_code"] == "TRANSITION_NOT_PERMITTED"
        assert rejected["actor_id"] == "planner-1"
        assert "traceback" not in rejected

        [trace] = _records(captured_logs, "workflow_transition")
        assert trace["outcome"] == "TRANSITION_NOT_PERMITTED"
        assert trace["entity_id"] == "SCHEME-2"
        assert "duration_ms" in trace
        assert "version" not in trace
        assert "audited" not in trace

    def test_store_failure_logs_exception_fields(self, table, authorization, clock, actor, captured_logs):
        manager = WorkflowManager(table, UnreachableWorkflowStore(), authorization, clock=clock)
        manager.transition("survey", "SP-1", "draft", "computed", actor("surveyor-1"))

        [rejected] = _records(captured_logs, "workflow_transition_rejected")
        assert rejected["level"] == "ERROR"
        assert rejected["domain"] == "survey"
        assert rejected["exc_code"] == "STORE_UNAVAILABLE"
        assert rejected["exc_type"] == "StoreUnavailableError"
        assert rejected["exc_operation"] == "workflow.load"
        assert "StoreUnavailableError" in rejected["traceback"]

    def test_audit_append_logged_inside_transition(self, manager, actor, captured_logs):
        manager.transition("deeds", "ST-9", "draft", "submitted", actor("conveyancer-1"))

        appended = _records(captured_logs, "audit_entry_appended")[0]
        assert appended["domain"] == "deeds"
        assert appended["actor_id"] == "conveyancer-1"
        assert appended["resource_id"] == "ST-9"

    def test_context_released_after_transition(self, manager, actor, captured_logs):
        manager.transition("planning", "SCHEME-1", "draft", "submitted", actor("planner-1"))
        get_logger("tests").info("after_transition")

        assert LogContext.get_all() == {}
        [after] = _records(captured_logs, "after_transition")
        assert "domain" not in after
        assert "entity_id" not in after

    def test_correlation_id_from_request(self, role_map, captured_logs):
        registry = create_land_registry(
            StaticRoleProvider(role_map), clock=DeterministicClock(auto_advance=1.0)
        )
        registry.transition_planning(
            "SCHEME-3", "draft", "submitted",
            RequestContext(user_id="planner-1", role="planner", correlation_id="req-42"),
        )

        [trace] = _records(captured_logs, "workflow_transition")
        assert trace["correlation_id"] == "req-42"
        assert trace["domain"] == "planning"


class TestAuditChainRecords:

    def test_valid_chain(self, ledger, captured_logs):
        _view_chain(ledger)
        ledger.verify_integrity(*RESOURCE)

        [record] = _records(captured_logs, "audit_chain_valid")
        assert record["level"] == "INFO"
        assert record["resource_type"] == "sectional_title"
        assert record["resource_id"] == "ST-1"
        assert record["entry_count"] == 3
        assert record["tamper_detected"] is False

    def test_tampered_chain(self, ledger, audit_store, captured_logs):
        _view_chain(ledger)
        stored = audit_store._chains[RESOURCE]
        stored[1] = replace(stored[1], actor_id="someone-else")
        ledger.verify_integrity(*RESOURCE)

        [broken] = _records(captured_logs, "audit_chain_broken")
        assert broken["level"] == "CRITICAL"
        assert broken["resource_type"] == "sectional_title"
        assert broken["resource_id"] == "ST-1"
        assert broken["entry_count"] == 3
        assert broken["tamper_detected"] is True
        assert broken["missing_entries"] == 0
        assert broken["first_broken_entry"] == str(stored[1].id)
        assert broken["errors"]
        assert "duration_ms" in broken

    def test_gap_in_chain(self, ledger, audit_store, captured_logs):
        _view_chain(ledger, 4)
        del audit_store._chains[RESOURCE][1]
        ledger.verify_integrity(*RESOURCE)

        [broken] = _records(captured_logs, "audit_chain_broken")
        assert broken["tamper_detected"] is False
        assert broken["missing_entries"] >= 1

    def test_resource_context_released(self, ledger, captured_logs):
        ledger.verify_integrity(*RESOURCE)
        assert LogContext.get_all() == {}


class TestLogContext:

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="ledger_id"):
            with LogContext.bind(ledger_id="L-1"):
                pass
        with pytest.raises(TypeError, match="ledger_id"):
            LogContext.set(ledger_id="L-1")

    def test_nested_binds_merge_and_restore(self):
        with LogContext.bind(correlation_id="req-1"):
            with LogContext.bind(domain="deeds", entity_id="ST-1", actor_id=None):
                assert LogContext.get_all() == {
                    "correlation_id": "req-1",
                    "domain": "deeds",
                    "entity_id": "ST-1",
                }
            assert LogContext.get_all() == {"correlation_id": "req-1"}
        assert LogContext.get_all() == {}

    def test_restored_when_block_raises(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(entity_id="SP-1"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}

    def test_bound_field_wins_over_extra(self, captured_logs):
        with LogContext.bind(entity_id="ST-1"):
            get_logger("tests").info("override_attempt", extra={"entity_id": "ST-2"})
        [record] = _records(captured_logs, "override_attempt")
        assert record["entity_id"] == "ST-1"

    def test_values_json_cannot_encode(self, captured_logs):
        get_logger("tests").info(
            "odd_values",
            extra={"fee": Decimal("12.50"), "roles": frozenset({"registrar", "admin"})},
        )
        [record] = _records(captured_logs, "odd_values")
        assert record["fee"] == "12.50"
        assert record["roles"] == ["admin", "registrar"]


class TestConfigureLogging:

    @pytest.fixture
    def fresh_logging(self):
        reset_logging()
        yield
        reset_logging()
        configure_logging(level=logging.DEBUG)

    def test_configured_once(self, fresh_logging):
        first, second = StringIO(), StringIO()
        configure_logging(level="warning", stream=first)
        configure_logging(level=logging.DEBUG, stream=second)

        get_logger("tests").info("below_threshold")
        get_logger("tests").warning("handoff_pending", extra={"handoff_type": "survey_to_deeds"})

        root = logging.getLogger("landreg_kernel")
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert "below_threshold" not in first.getvalue()
        assert '"handoff_type": "survey_to_deeds"' in first.getvalue()
        assert second.getvalue() == ""
