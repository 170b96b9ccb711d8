"""
Typed Exception Hierarchy for the Land Registry Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every state change in the registry is a legal act. Callers (HTTP handlers,
batch jobs, the public service facade) must be able to tell a stale read from
an unauthorized actor from a broken audit chain without parsing messages.

Each exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a ``code`` class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (not just a message string)

Example:
    try:
        manager.commit_transition(...)
    except VersionConflictError as e:
        retry_after_reload(e.entity_id)
    except TerminalStateError as e:
        api_response(code=e.code, state=e.state)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LandRegistryError (base)
    |
    +-- WorkflowValidationError
    |   +-- UnknownDomainError
    |   +-- UnknownStateError
    |   +-- InvalidTransitionRequestError
    |   +-- InvalidQueryError
    |   +-- InvalidAuditEventError
    |
    +-- AuthorizationError
    |   +-- RoleNotHeldError
    |   +-- TransitionNotPermittedError
    |
    +-- ConflictError
    |   +-- StateConflictError
    |   +-- VersionConflictError
    |   +-- EntityAlreadyExistsError
    |
    +-- TerminalStateError
    |
    +-- NotFoundError
    |   +-- EntityNotFoundError
    |
    +-- StoreError
    |   +-- StoreUnavailableError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |   +-- AuditChainGapError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | UNKNOWN_DOMAIN              | Domain has no registered definition
                | UNKNOWN_STATE               | State is not a member of the domain
                | INVALID_TRANSITION_REQUEST  | Malformed request (e.g. from == to)
                | INVALID_QUERY               | Bad pagination or date range
                | INVALID_AUDIT_EVENT         | Unknown event type or non-JSON payload
----------------|-----------------------------|-----------------------------------------
Authorization   | ROLE_NOT_HELD               | Provider denies the claimed role
                | TRANSITION_NOT_PERMITTED    | Role may not move to the target state
----------------|-----------------------------|-----------------------------------------
Conflict        | STATE_CONFLICT              | Persisted state != caller's from_state
                | VERSION_CONFLICT            | Compare-and-swap lost the race
                | ENTITY_ALREADY_EXISTS       | Explicit initialization of a known entity
----------------|-----------------------------|-----------------------------------------
Terminal        | TERMINAL_STATE              | Transition out of a terminal state
----------------|-----------------------------|-----------------------------------------
Not found       | ENTITY_NOT_FOUND            | No workflow record for the entity
----------------|-----------------------------|-----------------------------------------
System          | STORE_UNAVAILABLE           | Backing store failed (I/O, driver)
----------------|-----------------------------|-----------------------------------------
Integrity       | AUDIT_CHAIN_BROKEN          | Recomputed hash does not match
                | AUDIT_CHAIN_GAP             | previous_hash link is missing
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of an append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

Workflow and facade boundaries never let these escape: they are turned into
structured results (``success``, ``error_code``, ``error``) and HTTP handlers
decide the status code. Integrity errors are only ever raised by read-side
verification, never by the write path.

    except ConflictError as e:
        # Re-read the entity and let the user retry
    except AuthorizationError as e:
        # 403
    except StoreError as e:
        # 503, page the on-call
"""


class LandRegistryError(Exception):
    """
    Base exception for all land registry kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LAND_REGISTRY_ERROR"


# Validation


class WorkflowValidationError(LandRegistryError):
    """Malformed input: unknown domain, state, or request shape."""

    code: str = "VALIDATION_ERROR"


class UnknownDomainError(WorkflowValidationError):
    """No workflow definition is registered under this domain name."""

    code: str = "UNKNOWN_DOMAIN"

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"Unknown workflow domain: {domain}")


class UnknownStateError(WorkflowValidationError):
    """State is not a member of the domain's state set."""

    code: str = "UNKNOWN_STATE"

    def __init__(self, domain: str, state: str):
        self.domain = domain
        self.state = state
        super().__init__(f"State {state!r} is not defined for domain {domain}")


class InvalidTransitionRequestError(WorkflowValidationError):
    """Transition request is structurally invalid."""

    code: str = "INVALID_TRANSITION_REQUEST"

    def __init__(self, domain: str, entity_id: str, reason: str):
        self.domain = domain
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Invalid transition request for {domain} {entity_id}: {reason}")


class InvalidQueryError(WorkflowValidationError):
    """Audit query filters are invalid."""

    code: str = "INVALID_QUERY"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid audit query: {reason}")


class InvalidAuditEventError(WorkflowValidationError):
    """Audit event fields cannot be recorded (bad event type, non-JSON payload)."""

    code: str = "INVALID_AUDIT_EVENT"

    def __init__(self, resource_type: str, resource_id: str, reason: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(
            f"Invalid audit event for {resource_type} {resource_id}: {reason}"
        )


# Authorization


class AuthorizationError(LandRegistryError):
    """Actor is not permitted to perform the requested action."""

    code: str = "AUTHORIZATION_ERROR"


class RoleNotHeldError(AuthorizationError):
    """The authorization provider denies that the actor holds the role."""

    code: str = "ROLE_NOT_HELD"

    def __init__(self, user_id: str, role: str, reason: str | None = None):
        self.user_id = user_id
        self.role = role
        self.reason = reason
        message = f"User {user_id} does not hold role {role}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class TransitionNotPermittedError(AuthorizationError):
    """Role may not move the entity from its current state to the target."""

    code: str = "TRANSITION_NOT_PERMITTED"

    def __init__(
        self,
        domain: str,
        from_state: str,
        to_state: str,
        role: str,
        allowed: tuple[str, ...] = (),
    ):
        self.domain = domain
        self.from_state = from_state
        self.to_state = to_state
        self.role = role
        self.allowed = allowed
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Role {role} is not authorized to move {domain} from {from_state} "
            f"to {to_state}. Allowed next states: {allowed_text}"
        )


# Conflict


class ConflictError(LandRegistryError):
    """Concurrent modification or stale caller data."""

    code: str = "CONFLICT"


class StateConflictError(ConflictError):
    """Persisted state does not match the caller's assumed from_state."""

    code: str = "STATE_CONFLICT"

    def __init__(self, domain: str, entity_id: str, expected_state: str, actual_state: str):
        self.domain = domain
        self.entity_id = entity_id
        self.expected_state = expected_state
        self.actual_state = actual_state
        super().__init__(
            f"{domain} {entity_id} is in state {actual_state}, not {expected_state}. "
            "Refresh and try again."
        )


class VersionConflictError(ConflictError):
    """Compare-and-swap commit lost the race against another writer."""

    code: str = "VERSION_CONFLICT"

    def __init__(self, domain: str, entity_id: str, expected_version: int, actual_version: int):
        self.domain = domain
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {domain} {entity_id}: expected version "
            f"{expected_version}, found {actual_version}"
        )


class EntityAlreadyExistsError(ConflictError):
    """Explicit initialization of an entity that already has a record."""

    code: str = "ENTITY_ALREADY_EXISTS"

    def __init__(self, domain: str, entity_id: str):
        self.domain = domain
        self.entity_id = entity_id
        super().__init__(f"{domain} {entity_id} already has a workflow record")


# Terminal


class TerminalStateError(LandRegistryError):
    """Terminal states have no outgoing transitions, whatever the role."""

    code: str = "TERMINAL_STATE"

    def __init__(self, domain: str, entity_id: str, state: str):
        self.domain = domain
        self.entity_id = entity_id
        self.state = state
        super().__init__(f"Cannot transition {domain} {entity_id} out of final state {state}")


# Not found


class NotFoundError(LandRegistryError):
    """Referenced entity or resource has no record."""

    code: str = "NOT_FOUND"


class EntityNotFoundError(NotFoundError):
    """No workflow record exists for the entity."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, domain: str, entity_id: str):
        self.domain = domain
        self.entity_id = entity_id
        super().__init__(f"No workflow record for {domain} {entity_id}")


# System


class StoreError(LandRegistryError):
    """Backing store failed for reasons unrelated to business rules."""

    code: str = "SYSTEM_ERROR"


class StoreUnavailableError(StoreError):
    """Database or driver error while talking to the backing store."""

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Store operation {operation} failed: {detail}")


# Integrity


class AuditError(LandRegistryError):
    """Base exception for audit chain verification failures."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """A stored hash does not match its recomputed value."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_entry_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


class AuditChainGapError(AuditError):
    """An entry's previous_hash does not point at its predecessor."""

    code: str = "AUDIT_CHAIN_GAP"

    def __init__(self, resource_type: str, resource_id: str, missing_entries: int):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.missing_entries = missing_entries
        super().__init__(
            f"Audit chain for {resource_type} {resource_id} has "
            f"{missing_entries} missing link(s)"
        )


# Immutability


class ImmutabilityError(LandRegistryError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Audit entries (other than their archive flag) and transition history rows
    are immutable once written.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
