"""
Authorization provider interface and reference implementations.

The workflow manager never looks up roles itself. It asks one
``AuthorizationProvider`` whether the actor holds the role they claim to act
under. Redundant sources (directory, database, static seed) are combined
explicitly with ``ChainedAuthorizationProvider`` rather than by ad hoc
fallbacks at the call site.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class AuthorizationDecision:
    """Result of a role check. ``reason`` explains a denial."""
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "AuthorizationDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "AuthorizationDecision":
        return cls(allowed=False, reason=reason)


@runtime_checkable
class AuthorizationProvider(Protocol):
    """Pluggable interface for role membership lookups."""

    def has_role(self, user_id: str, role: str) -> AuthorizationDecision:
        """Whether ``user_id`` currently holds ``role``."""
        ...

    def has_any_role(self, user_id: str, roles: Iterable[str]) -> AuthorizationDecision:
        """Whether ``user_id`` holds at least one of ``roles``."""
        ...


class StaticRoleProvider:
    """AuthorizationProvider backed by a simple dict.

    Can be replaced with a database-backed or directory-backed implementation.
    """

    def __init__(self, role_map: Mapping[str, Iterable[str]] | None = None) -> None:
        self._role_map: dict[str, frozenset[str]] = {
            user_id: frozenset(roles) for user_id, roles in (role_map or {}).items()
        }

    def roles_of(self, user_id: str) -> frozenset[str]:
        return self._role_map.get(user_id, frozenset())

    def has_role(self, user_id: str, role: str) -> AuthorizationDecision:
        if role in self.roles_of(user_id):
            return AuthorizationDecision.allow()
        return AuthorizationDecision.deny(f"role {role} not assigned")

    def has_any_role(self, user_id: str, roles: Iterable[str]) -> AuthorizationDecision:
        wanted = frozenset(roles)
        if wanted & self.roles_of(user_id):
            return AuthorizationDecision.allow()
        return AuthorizationDecision.deny(
            f"none of {', '.join(sorted(wanted))} assigned"
        )


class ChainedAuthorizationProvider:
    """Ordered list of providers; the first one that allows wins.

    A denial from every provider is reported with each provider's reason.
    """

    def __init__(self, providers: Sequence[AuthorizationProvider]) -> None:
        if not providers:
            raise ValueError("ChainedAuthorizationProvider requires at least one provider")
        self._providers = tuple(providers)

    def has_role(self, user_id: str, role: str) -> AuthorizationDecision:
        reasons = []
        for provider in self._providers:
            decision = provider.has_role(user_id, role)
            if decision.allowed:
                return decision
            if decision.reason:
                reasons.append(decision.reason)
        return AuthorizationDecision.deny("; ".join(reasons) or "denied")

    def has_any_role(self, user_id: str, roles: Iterable[str]) -> AuthorizationDecision:
        roles = tuple(roles)
        reasons = []
        for provider in self._providers:
            decision = provider.has_any_role(user_id, roles)
            if decision.allowed:
                return decision
            if decision.reason:
                reasons.append(decision.reason)
        return AuthorizationDecision.deny("; ".join(reasons) or "denied")
