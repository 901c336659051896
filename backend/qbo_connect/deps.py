from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header

from .config import AppSettings, get_settings
from .errors import Unauthenticated
from .services.audit import AuditSink, LoggingAuditSink, SqlAuditSink
from .services.cipher import TokenCipher
from .services.connection import QuickBooksConnectionService
from .services.credential_store import SqlCredentialStore
from .services.oauth_state import OAuthStateService, SqlOAuthStateStore
from .services.permissions import PermissionGate
from .services.quickbooks_client import IntuitOAuthClient, QuickBooksApiClient
from .services.session_resolver import SessionResolver
from .services.teams import SqlTeamRepository, TeamRepository
from .services.token_manager import TokenLifecycleManager


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> str:
    """Caller identity as established by the upstream authentication layer.

    Role claims are never read from the request; roles come from the stored
    team membership.
    """
    if not isinstance(x_user_id, str) or not x_user_id.strip():
        raise Unauthenticated("missing X-User-ID header")
    return x_user_id.strip()


async def get_team_id(
    x_team_id: str = Header(..., alias="X-Team-ID"),
) -> str:
    return x_team_id.strip()


async def get_optional_team_id(
    x_team_id: str | None = Header(default=None, alias="X-Team-ID"),
) -> str | None:
    if not isinstance(x_team_id, str) or not x_team_id.strip():
        return None
    return x_team_id.strip()


@lru_cache(maxsize=1)
def get_team_repository() -> TeamRepository:
    return SqlTeamRepository()


@lru_cache(maxsize=1)
def get_oauth_client() -> IntuitOAuthClient:
    return IntuitOAuthClient(get_settings().quickbooks)


@lru_cache(maxsize=1)
def get_api_client() -> QuickBooksApiClient:
    return QuickBooksApiClient(get_settings().quickbooks)


@lru_cache(maxsize=1)
def get_token_manager() -> TokenLifecycleManager:
    settings = get_settings()
    cipher = TokenCipher(
        settings.credentials.encryption_key,
        iterations=settings.credentials.kdf_iterations,
    )
    return TokenLifecycleManager(
        store=SqlCredentialStore(),
        cipher=cipher,
        provider=get_oauth_client(),
        refresh_buffer_seconds=settings.credentials.refresh_buffer_seconds,
    )


def build_audit_sink(settings: AppSettings) -> AuditSink:
    if settings.audit_sink == "log":
        return LoggingAuditSink()
    return SqlAuditSink()


@lru_cache(maxsize=1)
def get_connection_service() -> QuickBooksConnectionService:
    settings = get_settings()
    teams = get_team_repository()
    return QuickBooksConnectionService(
        teams=teams,
        gate=PermissionGate(teams),
        tokens=get_token_manager(),
        oauth=get_oauth_client(),
        states=OAuthStateService(
            SqlOAuthStateStore(), ttl_seconds=settings.oauth_state.ttl_seconds
        ),
        audit=build_audit_sink(settings),
    )


def get_session_resolver(
    teams: TeamRepository = Depends(get_team_repository),
) -> SessionResolver:
    """A fresh resolver per request; its cache never outlives the request."""
    return SessionResolver(teams)
