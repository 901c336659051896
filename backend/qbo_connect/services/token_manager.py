"""QuickBooks token lifecycle: classification, inline refresh and code exchange.

Refresh runs inline with the request that needs a credential. Concurrent
callers for the same tenant share one in-flight refresh task, and callers wait
on it through ``asyncio.shield`` so a disconnecting client never abandons a
provider call that may already have rotated the refresh token.

Nothing decrypted is cached on the manager; every call re-reads the store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    AuthorizationCodeError,
    ConfigurationError,
    DecryptError,
    NoConnection,
    ProviderRejected,
    RequiresReauth,
    StaleWriteError,
    TransientFailure,
)
from ..metrics import metrics
from ..models import (
    BearerToken,
    ConnectionStatus,
    CredentialRecord,
    CredentialStatus,
    TokenState,
)
from .cipher import TokenCipher, is_well_formed
from .credential_store import CredentialStore
from .quickbooks_client import TokenResponse

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
DEFAULT_REFRESH_BUFFER_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenProvider(Protocol):
    async def exchange_code(self, code: str) -> TokenResponse: ...

    async def refresh(self, refresh_token: str) -> TokenResponse: ...

    async def revoke(self, token: str) -> bool: ...


def classify(
    record: Optional[CredentialRecord],
    now: datetime,
    buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
) -> TokenState:
    """Place a stored record in the lifecycle; ``REFRESHING`` is not derivable
    from the record alone and is reported by ``TokenLifecycleManager.state``."""
    if record is None:
        return TokenState.UNCONNECTED
    if record.revoked:
        return TokenState.REVOKED
    if record.status == CredentialStatus.REAUTH_REQUIRED:
        return TokenState.REFRESH_FAILED
    if record.access_expires_at <= now:
        return TokenState.EXPIRED
    if record.access_expires_at <= now + timedelta(seconds=buffer_seconds):
        return TokenState.EXPIRING_SOON
    return TokenState.ACTIVE


def _refresh_token_expired(record: CredentialRecord, now: datetime) -> bool:
    return record.refresh_expires_at is not None and record.refresh_expires_at <= now


class TokenLifecycleManager:
    def __init__(
        self,
        store: CredentialStore,
        cipher: TokenCipher,
        provider: TokenProvider,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._provider = provider
        self._buffer = refresh_buffer_seconds
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}
        self._inflight_lock = asyncio.Lock()

    # -- reads ---------------------------------------------------------------

    def _read(self, tenant_id: str) -> Optional[CredentialRecord]:
        try:
            return self._store.get(tenant_id)
        except SQLAlchemyError as exc:
            logger.exception("credential_store_read_failed", extra={"tenant_id": tenant_id})
            raise TransientFailure("credential store unavailable") from exc

    def classify(self, record: Optional[CredentialRecord]) -> TokenState:
        return classify(record, self._clock(), self._buffer)

    def state(self, tenant_id: str) -> TokenState:
        if tenant_id in self._inflight:
            return TokenState.REFRESHING
        return self.classify(self._read(tenant_id))

    def connection_status(self, tenant_id: str) -> ConnectionStatus:
        record = self._read(tenant_id)
        if record is None or record.revoked:
            return ConnectionStatus.UNCONNECTED
        if record.status == CredentialStatus.REAUTH_REQUIRED:
            return ConnectionStatus.REQUIRES_REAUTH
        if _refresh_token_expired(record, self._clock()):
            return ConnectionStatus.REQUIRES_REAUTH
        return ConnectionStatus.ACTIVE

    def _decrypt_failed(self, record: CredentialRecord, blob: str) -> RequiresReauth:
        # A well-formed blob that fails to open points at a rotated master key;
        # a malformed one at corruption.
        metrics.decrypt_errors += 1
        logger.error(
            "credential_decrypt_failed",
            extra={
                "tenant_id": record.tenant_id,
                "version": record.version,
                "well_formed": is_well_formed(blob),
            },
        )
        self._mark_reauth(record)
        return RequiresReauth("stored credential could not be decrypted")

    def _bearer(self, record: CredentialRecord) -> BearerToken:
        try:
            access_token = self._cipher.decrypt_access(record.encrypted_access_token)
        except DecryptError as exc:
            raise self._decrypt_failed(record, record.encrypted_access_token) from exc
        return BearerToken(
            access_token=access_token,
            realm_id=record.realm_id,
            expires_at=record.access_expires_at,
        )

    # -- valid credential ----------------------------------------------------

    async def get_valid_credential(self, tenant_id: str) -> BearerToken:
        record = self._read(tenant_id)
        state = self.classify(record)
        if state in (TokenState.UNCONNECTED, TokenState.REVOKED):
            raise NoConnection(f"no QuickBooks credential for {tenant_id}")
        if state == TokenState.REFRESH_FAILED:
            raise RequiresReauth(f"credential for {tenant_id} needs re-authorization")
        if state == TokenState.ACTIVE:
            return self._bearer(record)
        return await self._join_refresh(tenant_id)

    async def _join_refresh(self, tenant_id: str) -> BearerToken:
        async with self._inflight_lock:
            task = self._inflight.get(tenant_id)
            if task is None:
                task = asyncio.ensure_future(self._refresh(tenant_id))
                self._inflight[tenant_id] = task
                task.add_done_callback(lambda t: self._refresh_done(tenant_id, t))
            else:
                metrics.token_refresh_joined += 1
        return await asyncio.shield(task)

    def _refresh_done(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(tenant_id) is task:
            del self._inflight[tenant_id]
        if not task.cancelled():
            # Mark the outcome retrieved even when every waiter went away.
            task.exception()

    async def _refresh(self, tenant_id: str) -> BearerToken:
        # Another process may have refreshed since the caller's read.
        record = self._read(tenant_id)
        state = self.classify(record)
        if state in (TokenState.UNCONNECTED, TokenState.REVOKED):
            raise NoConnection(f"no QuickBooks credential for {tenant_id}")
        if state == TokenState.REFRESH_FAILED:
            raise RequiresReauth(f"credential for {tenant_id} needs re-authorization")
        if state == TokenState.ACTIVE:
            return self._bearer(record)

        if _refresh_token_expired(record, self._clock()):
            logger.info("qbo_refresh_token_expired", extra={"tenant_id": tenant_id})
            if not self._mark_reauth(record):
                return self._newer_after_stale_write(tenant_id)
            metrics.reauth_required += 1
            raise RequiresReauth(f"refresh token for {tenant_id} has expired")

        try:
            refresh_token = self._cipher.decrypt_refresh(record.encrypted_refresh_token)
        except DecryptError as exc:
            raise self._decrypt_failed(record, record.encrypted_refresh_token) from exc

        try:
            tokens = await self._provider.refresh(refresh_token)
        except ProviderRejected as exc:
            metrics.token_refresh_failures += 1
            logger.warning(
                "qbo_refresh_rejected",
                extra={"tenant_id": tenant_id, "error": exc.error, "status": exc.status},
            )
            if not self._mark_reauth(record):
                # The rejected grant belonged to a connection that has since been replaced.
                return self._newer_after_stale_write(tenant_id)
            metrics.reauth_required += 1
            raise RequiresReauth(f"provider rejected refresh for {tenant_id}") from exc
        except TransientFailure:
            metrics.token_refresh_failures += 1
            logger.warning("qbo_refresh_transient_failure", extra={"tenant_id": tenant_id})
            raise
        except ConfigurationError:
            # App-level misconfiguration; the tenant's grant is not at fault.
            metrics.token_refresh_failures += 1
            logger.error("qbo_refresh_misconfigured", extra={"tenant_id": tenant_id})
            raise

        now = self._clock()
        refresh_expires_at = record.refresh_expires_at
        if tokens.x_refresh_token_expires_in is not None:
            refresh_expires_at = now + timedelta(seconds=tokens.x_refresh_token_expires_in)
        updated = record.evolve(
            encrypted_access_token=self._cipher.encrypt_access(tokens.access_token),
            encrypted_refresh_token=self._cipher.encrypt_refresh(tokens.refresh_token),
            access_expires_at=now + timedelta(seconds=tokens.expires_in),
            refresh_expires_at=refresh_expires_at,
            status=CredentialStatus.ACTIVE,
            updated_at=now,
        )
        try:
            stored = self._store.put(updated, expected_version=record.version)
        except StaleWriteError:
            metrics.token_stale_writes += 1
            logger.info(
                "qbo_refresh_stale_write",
                extra={"tenant_id": tenant_id, "expected_version": record.version},
            )
            return self._newer_after_stale_write(tenant_id)
        except SQLAlchemyError as exc:
            logger.exception("credential_store_write_failed", extra={"tenant_id": tenant_id})
            raise TransientFailure("credential store unavailable") from exc

        metrics.token_refreshes += 1
        logger.info(
            "qbo_token_refreshed",
            extra={
                "tenant_id": tenant_id,
                "version": stored.version,
                "expires_in": tokens.expires_in,
            },
        )
        return BearerToken(
            access_token=tokens.access_token,
            realm_id=stored.realm_id,
            expires_at=stored.access_expires_at,
        )

    def _newer_after_stale_write(self, tenant_id: str) -> BearerToken:
        latest = self._read(tenant_id)
        state = self.classify(latest)
        if state in (TokenState.UNCONNECTED, TokenState.REVOKED):
            raise NoConnection(f"credential for {tenant_id} was removed during refresh")
        if state == TokenState.REFRESH_FAILED:
            raise RequiresReauth(f"credential for {tenant_id} needs re-authorization")
        if state == TokenState.EXPIRED:
            raise TransientFailure(f"concurrent refresh for {tenant_id} left no usable token")
        return self._bearer(latest)

    def _mark_reauth(self, record: CredentialRecord) -> bool:
        """Returns False when a newer write superseded ``record``."""
        try:
            self._store.put(
                record.evolve(status=CredentialStatus.REAUTH_REQUIRED, updated_at=self._clock()),
                expected_version=record.version,
            )
        except StaleWriteError:
            # A newer write (usually a fresh authorization) takes precedence.
            logger.info("qbo_reauth_mark_superseded", extra={"tenant_id": record.tenant_id})
            return False
        except SQLAlchemyError:
            logger.exception("qbo_reauth_mark_failed", extra={"tenant_id": record.tenant_id})
        return True

    # -- authorization & disconnect -----------------------------------------

    async def create_token(
        self, code: str, tenant_id: str, realm_id: str | None
    ) -> BearerToken:
        """Exchange a single-use authorization code; never retried."""
        try:
            tokens = await self._provider.exchange_code(code)
        except (ProviderRejected, TransientFailure) as exc:
            logger.warning(
                "qbo_code_exchange_failed",
                extra={"tenant_id": tenant_id, "error": type(exc).__name__},
            )
            raise AuthorizationCodeError("authorization code exchange failed") from exc

        now = self._clock()
        existing = self._read(tenant_id)
        record = CredentialRecord(
            tenant_id=tenant_id,
            encrypted_access_token=self._cipher.encrypt_access(tokens.access_token),
            encrypted_refresh_token=self._cipher.encrypt_refresh(tokens.refresh_token),
            realm_id=realm_id,
            access_expires_at=now + timedelta(seconds=tokens.expires_in),
            refresh_expires_at=(
                now + timedelta(seconds=tokens.x_refresh_token_expires_in)
                if tokens.x_refresh_token_expires_in is not None
                else None
            ),
            status=CredentialStatus.ACTIVE,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        try:
            stored = self._store.put(record)
        except SQLAlchemyError as exc:
            logger.exception("credential_store_write_failed", extra={"tenant_id": tenant_id})
            raise TransientFailure("credential store unavailable") from exc
        metrics.qbo_connections += 1
        logger.info(
            "qbo_connected",
            extra={"tenant_id": tenant_id, "realm_id": realm_id, "version": stored.version},
        )
        return BearerToken(
            access_token=tokens.access_token,
            realm_id=realm_id,
            expires_at=stored.access_expires_at,
        )

    async def revoke(self, tenant_id: str) -> bool:
        """Best-effort provider revoke, then delete. Returns False if absent."""
        record = self._read(tenant_id)
        if record is None:
            return False
        try:
            refresh_token = self._cipher.decrypt_refresh(record.encrypted_refresh_token)
        except DecryptError:
            metrics.decrypt_errors += 1
            logger.error("credential_decrypt_failed", extra={"tenant_id": tenant_id})
            refresh_token = None
        if refresh_token is not None:
            revoked = await self._provider.revoke(refresh_token)
            if not revoked:
                logger.info("qbo_provider_revoke_skipped", extra={"tenant_id": tenant_id})
        self._store.delete(tenant_id)
        metrics.qbo_disconnections += 1
        logger.info("qbo_disconnected", extra={"tenant_id": tenant_id})
        return True
