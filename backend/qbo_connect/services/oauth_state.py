"""One-time OAuth ``state`` tokens for the QuickBooks redirect flow.

Only a sha256 digest of the token is persisted. A token is consumed on first
use regardless of outcome, expires after a TTL and is bound to the user who
started the flow; any mismatch is a hard ``StateMismatch``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from ..db import SessionLocal
from ..db_models import OAuthStateDB
from ..errors import StateMismatch
from ..models import ensure_aware

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def state_digest(state: str) -> str:
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PendingAuthorization:
    team_id: str
    user_id: str
    expires_at: datetime


class OAuthStateStore(Protocol):
    def save(self, digest: str, pending: PendingAuthorization) -> None: ...

    def pop(self, digest: str) -> PendingAuthorization | None: ...

    def purge_expired(self, now: datetime) -> int: ...


class InMemoryOAuthStateStore:
    def __init__(self) -> None:
        self._pending: Dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def save(self, digest: str, pending: PendingAuthorization) -> None:
        with self._lock:
            self._pending[digest] = pending

    def pop(self, digest: str) -> Optional[PendingAuthorization]:
        with self._lock:
            return self._pending.pop(digest, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [d for d, p in self._pending.items() if p.expires_at <= now]
            for digest in expired:
                del self._pending[digest]
            return len(expired)


class SqlOAuthStateStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def save(self, digest: str, pending: PendingAuthorization) -> None:
        session = self._session_factory()
        try:
            session.add(
                OAuthStateDB(
                    state_digest=digest,
                    team_id=pending.team_id,
                    user_id=pending.user_id,
                    expires_at=pending.expires_at,
                )
            )
            session.commit()
        finally:
            session.close()

    def pop(self, digest: str) -> Optional[PendingAuthorization]:
        session = self._session_factory()
        try:
            row = session.get(OAuthStateDB, digest)
            if row is None:
                return None
            pending = PendingAuthorization(
                team_id=row.team_id,
                user_id=row.user_id,
                expires_at=ensure_aware(row.expires_at),
            )
            # The delete count decides the winner when two callbacks race.
            deleted = (
                session.query(OAuthStateDB)
                .filter(OAuthStateDB.state_digest == digest)
                .delete(synchronize_session=False)
            )
            session.commit()
            return pending if deleted == 1 else None
        finally:
            session.close()

    def purge_expired(self, now: datetime) -> int:
        session = self._session_factory()
        try:
            count = (
                session.query(OAuthStateDB)
                .filter(OAuthStateDB.expires_at <= now)
                .delete(synchronize_session=False)
            )
            session.commit()
            return int(count or 0)
        finally:
            session.close()


class OAuthStateService:
    def __init__(
        self,
        store: OAuthStateStore,
        ttl_seconds: int = 600,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self, team_id: str, user_id: str) -> str:
        state = secrets.token_urlsafe(32)
        self._store.save(
            state_digest(state),
            PendingAuthorization(
                team_id=team_id,
                user_id=user_id,
                expires_at=self._clock() + self._ttl,
            ),
        )
        return state

    def consume(self, state: str | None, user_id: str) -> PendingAuthorization:
        if not state:
            raise StateMismatch("missing state parameter")
        pending = self._store.pop(state_digest(state))
        if pending is None:
            logger.warning("oauth_state_unknown", extra={"user_id": user_id})
            raise StateMismatch("unknown or already used state")
        if pending.expires_at <= self._clock():
            logger.warning(
                "oauth_state_expired",
                extra={"user_id": user_id, "team_id": pending.team_id},
            )
            raise StateMismatch("state expired")
        if not hmac.compare_digest(pending.user_id.encode("utf-8"), user_id.encode("utf-8")):
            logger.warning(
                "oauth_state_user_mismatch",
                extra={"user_id": user_id, "team_id": pending.team_id},
            )
            raise StateMismatch("state was issued to a different user")
        return pending

    def purge_expired(self) -> int:
        return self._store.purge_expired(self._clock())
