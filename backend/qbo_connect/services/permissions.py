"""Role-based permission gate.

Authorization is evaluated against the stored team membership only; role
claims supplied by the caller are never consulted. The gate must run before
any credential lookup so a denial never touches the token lifecycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from ..errors import ConfigurationError, Unauthorized
from ..metrics import metrics
from ..models import Capability, Role
from .teams import TeamRepository

logger = logging.getLogger(__name__)

NOT_A_MEMBER = "not_a_member"
INSUFFICIENT_ROLE = "insufficient_role"

CAPABILITY_ROLES: Dict[Capability, FrozenSet[Role]] = {
    Capability.VIEW_INVOICES: frozenset({Role.ADMIN, Role.ACCOUNTANT, Role.VIEWER}),
    Capability.EDIT_INVOICES: frozenset({Role.ADMIN, Role.ACCOUNTANT}),
    Capability.DELETE_INVOICES: frozenset({Role.ADMIN}),
    Capability.MANAGE_QUICKBOOKS: frozenset({Role.ADMIN, Role.ACCOUNTANT}),
    Capability.MANAGE_TEAM: frozenset({Role.ADMIN}),
    Capability.USE_AI_TOOLS: frozenset({Role.ADMIN, Role.ACCOUNTANT}),
}


def validate_capability_map(mapping: Dict[Capability, FrozenSet[Role]]) -> None:
    """Every capability must map to a non-empty set of known roles."""
    missing = [c.value for c in Capability if c not in mapping]
    if missing:
        raise ConfigurationError(f"capabilities without a role mapping: {missing}")
    for capability, roles in mapping.items():
        if not roles:
            raise ConfigurationError(f"capability {capability.value} maps to no roles")
        for role in roles:
            if not isinstance(role, Role):
                raise ConfigurationError(
                    f"capability {capability.value} maps to unknown role {role!r}"
                )


validate_capability_map(CAPABILITY_ROLES)


def coerce_capability(capability: Capability | str) -> Capability:
    try:
        capability = Capability(capability)
    except ValueError as exc:
        raise ConfigurationError(f"unknown capability {capability!r}") from exc
    if capability not in CAPABILITY_ROLES:
        raise ConfigurationError(f"capability {capability.value} has no role mapping")
    return capability


def roles_for(capability: Capability | str) -> FrozenSet[Role]:
    return CAPABILITY_ROLES[coerce_capability(capability)]


def capabilities_for(role: Role | str) -> FrozenSet[Capability]:
    role = Role(role)
    return frozenset(c for c, roles in CAPABILITY_ROLES.items() if role in roles)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    capability: Capability
    role: Optional[Role] = None
    reason: Optional[str] = None

    @classmethod
    def allow(cls, capability: Capability, role: Role) -> "Decision":
        return cls(allowed=True, capability=capability, role=role)

    @classmethod
    def deny(
        cls, capability: Capability, reason: str, role: Optional[Role] = None
    ) -> "Decision":
        return cls(allowed=False, capability=capability, role=role, reason=reason)


class PermissionGate:
    def __init__(self, teams: TeamRepository) -> None:
        self._teams = teams

    def authorize(
        self, user_id: str, team_id: str, capability: Capability | str
    ) -> Decision:
        capability = coerce_capability(capability)
        role = self._teams.get_role(team_id, user_id)
        if role is None:
            decision = Decision.deny(capability, NOT_A_MEMBER)
        elif role in CAPABILITY_ROLES[capability]:
            return Decision.allow(capability, role)
        else:
            decision = Decision.deny(capability, INSUFFICIENT_ROLE, role)

        metrics.record_denial(capability.value)
        logger.info(
            "permission_denied",
            extra={
                "user_id": user_id,
                "team_id": team_id,
                "capability": capability.value,
                "reason": decision.reason,
                "allowed_roles": sorted(r.value for r in roles_for(capability)),
            },
        )
        return decision

    def require(
        self, user_id: str, team_id: str, capability: Capability | str
    ) -> Decision:
        decision = self.authorize(user_id, team_id, capability)
        if not decision.allowed:
            raise Unauthorized(
                f"{user_id} may not {decision.capability.value} in {team_id}",
                reason=decision.reason or INSUFFICIENT_ROLE,
            )
        return decision
