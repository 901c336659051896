from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Optional
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_connection_id() -> str:
    return uuid4().hex


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps (SQLite round-trips) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Role(str, Enum):
    ADMIN = "admin"
    ACCOUNTANT = "accountant"
    VIEWER = "viewer"


class Capability(str, Enum):
    VIEW_INVOICES = "view_invoices"
    EDIT_INVOICES = "edit_invoices"
    DELETE_INVOICES = "delete_invoices"
    MANAGE_QUICKBOOKS = "manage_quickbooks"
    MANAGE_TEAM = "manage_team"
    USE_AI_TOOLS = "use_ai_tools"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"


class TokenState(str, Enum):
    UNCONNECTED = "unconnected"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"
    REVOKED = "revoked"


class ConnectionStatus(str, Enum):
    UNCONNECTED = "unconnected"
    ACTIVE = "active"
    REQUIRES_REAUTH = "requires_reauth"


class AuditOutcome(str, Enum):
    DENIED = "denied"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CredentialRecord:
    """Encrypted QuickBooks credential for one tenant.

    Only ciphertext is held here; see ``services.cipher`` for the blob format.
    ``connection_id`` is minted per authorization, so guarded writes from an
    earlier connection never match a record created after a reconnect.
    """

    tenant_id: str
    encrypted_access_token: str
    encrypted_refresh_token: str
    access_expires_at: datetime
    realm_id: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    revoked: bool = False
    version: int = 0
    connection_id: str = field(default_factory=new_connection_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def evolve(self, **changes) -> "CredentialRecord":
        return replace(self, **changes)


@dataclass(frozen=True)
class BearerToken:
    access_token: str
    realm_id: Optional[str]
    expires_at: datetime

    def __repr__(self) -> str:
        return f"BearerToken(realm_id={self.realm_id!r}, expires_at={self.expires_at.isoformat()})"


@dataclass
class TeamMembership:
    team_id: str
    user_id: str
    role: Role


@dataclass
class AuditEntry:
    actor_user_id: str
    team_id: Optional[str]
    action: str
    target_kind: str
    outcome: AuditOutcome
    target_id: Optional[str] = None
    payload_digest: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Team:
    id: str
    name: str
    owner_user_id: str
    connection_tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
