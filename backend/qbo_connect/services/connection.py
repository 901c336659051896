"""Entry points the rest of the application uses for QuickBooks access.

Every guarded call follows the same order: permission gate, tenant
resolution, valid credential, the caller's operation, then the audit entry.
A denial is audited and stops before the credential is ever read.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from ..errors import NoConnection, Unauthorized
from ..models import (
    AuditEntry,
    AuditOutcome,
    BearerToken,
    Capability,
    ConnectionStatus,
    Role,
)
from .audit import AuditSink, payload_digest, safe_record
from .oauth_state import OAuthStateService
from .permissions import (
    NOT_A_MEMBER,
    Decision,
    PermissionGate,
    capabilities_for,
    coerce_capability,
)
from .session_resolver import SessionResolver
from .teams import TeamRepository
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")
GuardedOperation = Callable[[BearerToken], Awaitable[T]]


class AuthorizationUrlBuilder(Protocol):
    def authorization_url(self, state: str) -> str: ...


@dataclass(frozen=True)
class AuthorizationRedirect:
    url: str
    state: str


@dataclass(frozen=True)
class ConnectionResult:
    tenant_id: str
    team_id: str
    realm_id: Optional[str]
    status: ConnectionStatus


class QuickBooksConnectionService:
    def __init__(
        self,
        teams: TeamRepository,
        gate: PermissionGate,
        tokens: TokenLifecycleManager,
        oauth: AuthorizationUrlBuilder,
        states: OAuthStateService,
        audit: AuditSink,
    ) -> None:
        self._teams = teams
        self._gate = gate
        self._tokens = tokens
        self._oauth = oauth
        self._states = states
        self._audit = audit

    def _resolver(self, resolver: SessionResolver | None) -> SessionResolver:
        return resolver if resolver is not None else SessionResolver(self._teams)

    def _audit_entry(
        self,
        *,
        user_id: str,
        team_id: str | None,
        action: str,
        target_kind: str,
        outcome: AuditOutcome,
        target_id: str | None = None,
        payload: Any = None,
    ) -> None:
        safe_record(
            self._audit,
            AuditEntry(
                actor_user_id=user_id,
                team_id=team_id,
                action=action,
                target_kind=target_kind,
                target_id=target_id,
                outcome=outcome,
                payload_digest=payload_digest(payload),
            ),
        )

    def _require(
        self,
        user_id: str,
        team_id: str,
        capability: Capability,
        action: str,
        target_kind: str,
        target_id: str | None = None,
        payload: Any = None,
    ) -> Decision:
        try:
            return self._gate.require(user_id, team_id, capability)
        except Unauthorized:
            self._audit_entry(
                user_id=user_id,
                team_id=team_id,
                action=action,
                target_kind=target_kind,
                target_id=target_id,
                outcome=AuditOutcome.DENIED,
                payload=payload,
            )
            raise

    def _require_member(self, user_id: str, team_id: str, action: str) -> None:
        if self._teams.get_role(team_id, user_id) is not None:
            return
        self._audit_entry(
            user_id=user_id,
            team_id=team_id,
            action=action,
            target_kind="connection",
            outcome=AuditOutcome.DENIED,
        )
        raise Unauthorized(f"{user_id} is not a member of {team_id}", reason=NOT_A_MEMBER)

    def member_permissions(
        self, team_id: str, user_id: str
    ) -> tuple[Role, frozenset[Capability]]:
        """Caller's stored role in the team and what it grants."""
        self._require_member(user_id, team_id, "team.permissions")
        role = self._teams.get_role(team_id, user_id)
        return role, capabilities_for(role)

    def authorize_action(
        self, user_id: str, team_id: str, capability: Capability | str
    ) -> Decision:
        return self._gate.authorize(user_id, team_id, capability)

    async def get_valid_credential(
        self, team_id: str, user_id: str, resolver: SessionResolver | None = None
    ) -> BearerToken:
        self._require_member(user_id, team_id, "qbo.credential")
        tenant_id = self._resolver(resolver).resolve(user_id, team_id)
        return await self._tokens.get_valid_credential(tenant_id)

    def begin_authorization(self, team_id: str, user_id: str) -> AuthorizationRedirect:
        self._require(
            user_id, team_id, Capability.MANAGE_QUICKBOOKS, "qbo.authorize", "connection"
        )
        state = self._states.issue(team_id, user_id)
        url = self._oauth.authorization_url(state)
        logger.info("qbo_authorization_started", extra={"team_id": team_id, "user_id": user_id})
        return AuthorizationRedirect(url=url, state=state)

    async def complete_authorization(
        self,
        code: str,
        state: str | None,
        user_id: str,
        realm_id: str | None = None,
    ) -> ConnectionResult:
        pending = self._states.consume(state, user_id)
        # Role may have changed between redirect and callback.
        self._require(
            user_id,
            pending.team_id,
            Capability.MANAGE_QUICKBOOKS,
            "qbo.connect",
            "connection",
            target_id=realm_id,
        )
        tenant_id = user_id
        try:
            await self._tokens.create_token(code, tenant_id, realm_id)
        except Exception:
            self._audit_entry(
                user_id=user_id,
                team_id=pending.team_id,
                action="qbo.connect",
                target_kind="connection",
                target_id=realm_id,
                outcome=AuditOutcome.FAILED,
            )
            raise
        self._teams.set_connection_tenant(pending.team_id, tenant_id)
        self._audit_entry(
            user_id=user_id,
            team_id=pending.team_id,
            action="qbo.connect",
            target_kind="connection",
            target_id=realm_id,
            outcome=AuditOutcome.SUCCEEDED,
        )
        return ConnectionResult(
            tenant_id=tenant_id,
            team_id=pending.team_id,
            realm_id=realm_id,
            status=self._tokens.connection_status(tenant_id),
        )

    async def disconnect(self, user_id: str) -> bool:
        """Revoke and delete the caller's own connection; idempotent."""
        removed = await self._tokens.revoke(user_id)
        detached = self._teams.detach_tenant(user_id)
        self._audit_entry(
            user_id=user_id,
            team_id=None,
            action="qbo.disconnect",
            target_kind="connection",
            target_id=user_id,
            outcome=AuditOutcome.SUCCEEDED,
            payload={"removed": removed, "teams_detached": detached},
        )
        return removed

    def connection_status(self, user_id: str) -> ConnectionStatus:
        return self._tokens.connection_status(user_id)

    def team_connection_status(
        self, team_id: str, user_id: str, resolver: SessionResolver | None = None
    ) -> ConnectionStatus:
        self._require_member(user_id, team_id, "qbo.status")
        try:
            tenant_id = self._resolver(resolver).resolve(user_id, team_id)
        except NoConnection:
            return ConnectionStatus.UNCONNECTED
        return self._tokens.connection_status(tenant_id)

    async def run_guarded(
        self,
        user_id: str,
        team_id: str,
        capability: Capability | str,
        action: str,
        target_kind: str,
        target_id: str | None,
        payload: Any,
        operation: GuardedOperation[T],
        resolver: SessionResolver | None = None,
    ) -> T:
        capability = coerce_capability(capability)
        self._require(
            user_id, team_id, capability, action, target_kind, target_id, payload
        )
        try:
            tenant_id = self._resolver(resolver).resolve(user_id, team_id)
            bearer = await self._tokens.get_valid_credential(tenant_id)
            result = await operation(bearer)
        except (Exception, asyncio.CancelledError):
            # A cancelled request still gets its FAILED entry before unwinding.
            self._audit_entry(
                user_id=user_id,
                team_id=team_id,
                action=action,
                target_kind=target_kind,
                target_id=target_id,
                outcome=AuditOutcome.FAILED,
                payload=payload,
            )
            raise
        self._audit_entry(
            user_id=user_id,
            team_id=team_id,
            action=action,
            target_kind=target_kind,
            target_id=target_id,
            outcome=AuditOutcome.SUCCEEDED,
            payload=payload,
        )
        return result
