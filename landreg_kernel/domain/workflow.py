"""
Workflow definitions and the transition table (``landreg_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects describing each domain's state machine (planning, survey,
deeds) and the ``TransitionTable`` that answers legality questions over them.
The engine never hard-codes a domain's states; definitions are loaded from
configuration and registered here.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects. ZERO I/O. No imports from
``db/``, ``stores/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* ``initial_state`` is a member of ``states``.
* Rules and handoffs reference only states in ``states``.
* Terminal states have no outgoing rules.
* ``display_status`` covers every state, so ``to_display_status`` is total.
* Every ``(domain, state)`` has a defined, possibly empty, transition set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from landreg_kernel.domain.audit import AuditEventType
from landreg_kernel.exceptions import UnknownDomainError, UnknownStateError

DEFAULT_AUDIT_EVENT_TYPE = "update"


class WorkflowDefinitionError(ValueError):
    """A workflow definition violates a structural invariant."""

    def __init__(self, domain: str, errors: list[str]):
        self.domain = domain
        self.errors = errors
        super().__init__(
            f"Invalid workflow definition {domain!r}: " + "; ".join(errors)
        )


@dataclass(frozen=True)
class TransitionRule:
    """``(from_state, role) -> to_states`` for one domain.

    Contract: frozen; ``to_states`` is non-empty.
    """
    from_state: str
    role: str
    to_states: frozenset[str]


@dataclass(frozen=True)
class HandoffRule:
    """Downstream module notified when an entity lands on ``state``."""
    state: str
    trigger: str
    to_module: str
    description: str = ""


@dataclass(frozen=True)
class WorkflowDefinition:
    """A domain state machine.

    Contract: frozen; validated by ``validate()`` before registration.
    ``rules`` may repeat a ``(from_state, role)`` pair; targets are unioned.
    """
    name: str
    description: str
    resource_type: str
    initial_state: str
    states: tuple[str, ...]
    terminal_states: frozenset[str]
    rules: tuple[TransitionRule, ...]
    display_status: Mapping[str, str]
    bypass_role: str | None = "admin"
    audit_event_types: Mapping[str, str] = field(default_factory=dict)
    handoffs: tuple[HandoffRule, ...] = ()

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        known = set(self.states)

        if len(known) != len(self.states):
            errors.append("duplicate states")
        if self.initial_state not in known:
            errors.append(f"initial state {self.initial_state!r} is not a state")
        for state in sorted(self.terminal_states - known):
            errors.append(f"terminal state {state!r} is not a state")

        for rule in self.rules:
            if rule.from_state not in known:
                errors.append(f"rule references unknown state {rule.from_state!r}")
            if rule.from_state in self.terminal_states:
                errors.append(f"terminal state {rule.from_state!r} has outgoing rules")
            if not rule.to_states:
                errors.append(
                    f"rule {rule.from_state!r}/{rule.role!r} has no target states"
                )
            for target in sorted(rule.to_states - known):
                errors.append(f"rule targets unknown state {target!r}")
            if rule.from_state in rule.to_states:
                errors.append(f"rule on {rule.from_state!r} targets itself")

        missing = [s for s in self.states if s not in self.display_status]
        if missing:
            errors.append(f"display_status missing for {', '.join(missing)}")
        for state in sorted(set(self.audit_event_types) - known):
            errors.append(f"audit event type declared for unknown state {state!r}")
        for state, event_type in sorted(self.audit_event_types.items()):
            try:
                AuditEventType.parse(event_type)
            except ValueError:
                errors.append(
                    f"audit event type {event_type!r} for state {state!r} is not recognised"
                )
        for handoff in self.handoffs:
            if handoff.state not in known:
                errors.append(f"handoff declared for unknown state {handoff.state!r}")

        return errors

    def validate(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise WorkflowDefinitionError(self.name, errors)

    def has_state(self, state: str) -> bool:
        return state in self.states

    def audit_event_type_for(self, state: str) -> str:
        return self.audit_event_types.get(state, DEFAULT_AUDIT_EVENT_TYPE)

    def handoff_for(self, state: str) -> HandoffRule | None:
        for handoff in self.handoffs:
            if handoff.state == state:
                return handoff
        return None


class TransitionTable:
    """
    Registry of workflow definitions with precomputed legality lookups.

    Built once at startup and read-only afterwards, so it is safe to share
    across threads.
    """

    def __init__(self, definitions: Iterable[WorkflowDefinition]):
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lookup: dict[str, dict[tuple[str, str], frozenset[str]]] = {}
        for definition in definitions:
            self._register(definition)

    def _register(self, definition: WorkflowDefinition) -> None:
        definition.validate()
        if definition.name in self._definitions:
            raise WorkflowDefinitionError(
                definition.name, ["domain registered twice"]
            )
        lookup: dict[tuple[str, str], set[str]] = {}
        for rule in definition.rules:
            lookup.setdefault((rule.from_state, rule.role), set()).update(rule.to_states)
        self._definitions[definition.name] = definition
        self._lookup[definition.name] = {
            key: frozenset(targets) for key, targets in lookup.items()
        }

    def domains(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    def definition(self, domain: str) -> WorkflowDefinition:
        try:
            return self._definitions[domain]
        except KeyError:
            raise UnknownDomainError(domain) from None

    def require_state(self, domain: str, state: str) -> None:
        """Raise UnknownStateError if ``state`` is not in the domain."""
        if not self.definition(domain).has_state(state):
            raise UnknownStateError(domain, state)

    def allowed_next_states(self, domain: str, state: str, role: str) -> frozenset[str]:
        """Targets ``role`` may move an entity in ``state`` to (table only)."""
        self.require_state(domain, state)
        return self._lookup[domain].get((state, role), frozenset())

    def roles_for(self, domain: str, state: str) -> Mapping[str, frozenset[str]]:
        """Every role with rules out of ``state`` and their targets."""
        self.require_state(domain, state)
        return MappingProxyType({
            role: targets
            for (from_state, role), targets in self._lookup[domain].items()
            if from_state == state
        })

    def is_terminal(self, domain: str, state: str) -> bool:
        self.require_state(domain, state)
        return state in self.definition(domain).terminal_states

    def is_bypass_role(self, domain: str, role: str) -> bool:
        bypass = self.definition(domain).bypass_role
        return bypass is not None and role == bypass

    def permits(self, domain: str, from_state: str, to_state: str, role: str) -> bool:
        """Whether ``role`` may perform ``from_state -> to_state``.

        The bypass role may move to any other state of the domain; terminal
        states are checked separately by the caller.
        """
        self.require_state(domain, to_state)
        if self.is_bypass_role(domain, role):
            return to_state != from_state
        return to_state in self.allowed_next_states(domain, from_state, role)

    def to_display_status(self, domain: str, state: str) -> str:
        self.require_state(domain, state)
        return self.definition(domain).display_status[state]
