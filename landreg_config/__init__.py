"""
landreg_config -- domain workflow configuration.

Responsibility:
    Loads the per-domain state machines (states, role-keyed transitions,
    terminal states, display statuses, audit event types, handoffs) from YAML
    and registers them in a ``TransitionTable``. The engine never hard-codes
    a domain's states; this package is where they live.

Architecture position:
    Configuration. Sits above ``landreg_kernel`` and below
    ``landreg_services``. The kernel MUST NEVER import from here.

Failure modes:
    - ``FileNotFoundError`` -- configuration directory has no workflow files.
    - ``WorkflowDefinitionError`` -- a definition fails structural checks.

Audit relevance:
    Every load emits ``workflow_config_loaded`` with each domain's checksum,
    tying audit entries to the exact transition tables that governed them.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from landreg_config.loader import (
    compute_checksum,
    load_yaml_file,
    parse_workflow_definition,
)
from landreg_kernel.domain.workflow import TransitionTable, WorkflowDefinition
from landreg_kernel.logging_config import get_logger

logger = get_logger("config")

# Bundled domain definitions
DEFAULT_WORKFLOW_DIR = Path(__file__).parent / "workflows"


@dataclass(frozen=True)
class WorkflowConfigSet:
    """Loaded definitions plus their identity."""
    table: TransitionTable
    definitions: tuple[WorkflowDefinition, ...]
    checksums: dict[str, str]
    checksum: str


def load_workflow_set(config_dir: Path | None = None) -> WorkflowConfigSet:
    """
    Load every ``*.yaml`` file in ``config_dir`` (sorted by file name).

    Raises:
        FileNotFoundError: if the directory holds no workflow files.
    """
    config_dir = Path(config_dir or DEFAULT_WORKFLOW_DIR)
    paths = sorted(config_dir.glob("*.yaml"))
    if not paths:
        raise FileNotFoundError(f"No workflow definitions found in {config_dir}")

    definitions: list[WorkflowDefinition] = []
    checksums: dict[str, str] = {}
    for path in paths:
        data = load_yaml_file(path)
        definition = parse_workflow_definition(data)
        definitions.append(definition)
        checksums[definition.name] = compute_checksum(data)

    table = TransitionTable(definitions)
    config_set = WorkflowConfigSet(
        table=table,
        definitions=tuple(definitions),
        checksums=checksums,
        checksum=compute_checksum(checksums),
    )
    logger.info(
        "workflow_config_loaded",
        extra={
            "config_dir": str(config_dir),
            "domains": list(table.domains()),
            "checksums": checksums,
            "checksum": config_set.checksum,
        },
    )
    return config_set


@lru_cache(maxsize=1)
def get_transition_table() -> TransitionTable:
    """The transition table built from the bundled definitions."""
    return load_workflow_set().table


__all__ = [
    "DEFAULT_WORKFLOW_DIR",
    "WorkflowConfigSet",
    "compute_checksum",
    "get_transition_table",
    "load_workflow_set",
]
