"""
Workflow Configuration Loader (``landreg_config.loader``).

Responsibility
--------------
Loads domain workflow YAML files and parses them into frozen
``WorkflowDefinition`` instances from the kernel domain layer.

Architecture position
---------------------
**Config layer**. Imports kernel domain value objects; the kernel never
imports from ``landreg_config``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every definition is structurally validated (``WorkflowDefinition.validate``)
  before it is returned.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Structural errors  -> ``WorkflowDefinitionError`` (a ``ValueError``).

Audit relevance
---------------
``compute_checksum`` lets an auditor confirm which version of the transition
tables governed a given period.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

import yaml

from landreg_kernel.domain.workflow import (
    HandoffRule,
    TransitionRule,
    WorkflowDefinition,
)
from landreg_kernel.utils.hashing import canonicalize_json

REQUIRED_KEYS = (
    "name",
    "resource_type",
    "initial_state",
    "states",
    "transitions",
    "display_status",
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _str_tuple(value: Any, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{field} must be a list of strings, got {value!r}")
    return tuple(str(v) for v in value)


def parse_rules(data: dict[str, Any]) -> tuple[TransitionRule, ...]:
    """
    Parse the ``transitions`` mapping: ``{from_state: {role: [to_states]}}``.

    States with no entry have an empty transition set.
    """
    rules: list[TransitionRule] = []
    for from_state, by_role in (data or {}).items():
        if not isinstance(by_role, dict):
            raise ValueError(
                f"transitions.{from_state} must map roles to target lists"
            )
        for role, targets in by_role.items():
            rules.append(
                TransitionRule(
                    from_state=str(from_state),
                    role=str(role),
                    to_states=frozenset(
                        _str_tuple(targets, f"transitions.{from_state}.{role}")
                    ),
                )
            )
    return tuple(rules)


def parse_handoff(data: dict[str, Any]) -> HandoffRule:
    return HandoffRule(
        state=data["state"],
        trigger=data["trigger"],
        to_module=data["to_module"],
        description=data.get("description", ""),
    )


def parse_workflow_definition(data: dict[str, Any]) -> WorkflowDefinition:
    """
    Parse and validate a ``WorkflowDefinition`` from a dict.

    Raises:
        KeyError: if required keys are missing.
        ValueError: if the definition is malformed or structurally invalid.
    """
    missing = [key for key in REQUIRED_KEYS if key not in data]
    if missing:
        raise KeyError(f"workflow definition missing keys: {', '.join(missing)}")

    definition = WorkflowDefinition(
        name=str(data["name"]),
        description=data.get("description", ""),
        resource_type=str(data["resource_type"]),
        initial_state=str(data["initial_state"]),
        states=_str_tuple(data["states"], "states"),
        terminal_states=frozenset(
            _str_tuple(data.get("terminal_states"), "terminal_states")
        ),
        rules=parse_rules(data["transitions"]),
        display_status={
            str(k): str(v) for k, v in (data["display_status"] or {}).items()
        },
        bypass_role=data.get("bypass_role"),
        audit_event_types={
            str(k): str(v) for k, v in (data.get("audit_event_types") or {}).items()
        },
        handoffs=tuple(parse_handoff(h) for h in data.get("handoffs") or ()),
    )
    definition.validate()
    return definition


def load_workflow_definition(path: Path) -> WorkflowDefinition:
    return parse_workflow_definition(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums, regardless of
    key order in the source YAML.
    """
    return hashlib.sha256(canonicalize_json(data).encode()).hexdigest()
