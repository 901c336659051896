from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class CredentialRecordDB(Base):
    __tablename__ = "qbo_credentials"

    tenant_id = Column(String(255), primary_key=True)
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)
    realm_id = Column(String(128), nullable=True)
    access_expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(32), nullable=False, default="active")
    revoked = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    connection_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TeamDB(Base):
    __tablename__ = "teams"

    id = Column(String(255), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    owner_user_id = Column(String(255), nullable=False)
    # Tenant (user) whose QuickBooks authorization this team uses.
    connection_tenant_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TeamMembershipDB(Base):
    __tablename__ = "team_memberships"
    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_member"),)

    id = Column(String(255), primary_key=True, default=_new_id)
    team_id = Column(
        String(255), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(32), nullable=False, default="viewer")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AuditEntryDB(Base):
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_user_id = Column(String(255), nullable=False, index=True)
    team_id = Column(String(255), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    target_kind = Column(String(64), nullable=False)
    target_id = Column(String(255), nullable=True)
    outcome = Column(String(32), nullable=False)
    payload_digest = Column(String(64), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )


class OAuthStateDB(Base):
    __tablename__ = "oauth_states"

    state_digest = Column(String(64), primary_key=True)
    team_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
