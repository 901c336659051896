from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Dict, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..db import SessionLocal, is_postgres
from ..db_models import CredentialRecordDB
from ..errors import StaleWriteError
from ..models import CredentialRecord, CredentialStatus, ensure_aware

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Persistence for encrypted credential records keyed by tenant.

    Implementations only ever see ciphertext. ``put`` bumps ``version``; when
    ``expected_version`` is supplied the write is rejected with
    ``StaleWriteError`` unless the stored record is the same connection at
    that version. Deleting and recreating a tenant starts a new connection.
    """

    def get(self, tenant_id: str) -> CredentialRecord | None: ...

    def put(
        self, record: CredentialRecord, expected_version: int | None = None
    ) -> CredentialRecord: ...

    def delete(self, tenant_id: str) -> None: ...

    def purge_revoked(self, older_than: datetime) -> int: ...


def _guard_matches(
    existing: Optional[CredentialRecord], record: CredentialRecord, expected_version: int
) -> bool:
    """A guarded write must target the same connection at the version it read."""
    if existing is None:
        return False
    return (
        existing.version == expected_version
        and existing.connection_id == record.connection_id
    )


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._records: Dict[str, CredentialRecord] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> Optional[CredentialRecord]:
        with self._lock:
            record = self._records.get(tenant_id)
            return record.evolve() if record else None

    def put(
        self, record: CredentialRecord, expected_version: int | None = None
    ) -> CredentialRecord:
        with self._lock:
            existing = self._records.get(record.tenant_id)
            current_version = existing.version if existing else 0
            if expected_version is not None and not _guard_matches(
                existing, record, expected_version
            ):
                raise StaleWriteError(
                    record.tenant_id, expected_version, current_version
                )
            stored = record.evolve(
                version=current_version + 1,
                created_at=existing.created_at if existing else record.created_at,
            )
            self._records[record.tenant_id] = stored
            return stored.evolve()

    def delete(self, tenant_id: str) -> None:
        with self._lock:
            self._records.pop(tenant_id, None)

    def purge_revoked(self, older_than: datetime) -> int:
        with self._lock:
            doomed = [
                tid
                for tid, rec in self._records.items()
                if rec.revoked and rec.updated_at < older_than
            ]
            for tid in doomed:
                del self._records[tid]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


def _to_record(row: CredentialRecordDB) -> CredentialRecord:
    return CredentialRecord(
        tenant_id=row.tenant_id,
        encrypted_access_token=row.encrypted_access_token,
        encrypted_refresh_token=row.encrypted_refresh_token,
        realm_id=row.realm_id,
        access_expires_at=ensure_aware(row.access_expires_at),
        refresh_expires_at=ensure_aware(row.refresh_expires_at),
        status=CredentialStatus(row.status or CredentialStatus.ACTIVE.value),
        revoked=bool(row.revoked),
        version=int(row.version or 0),
        connection_id=row.connection_id,
        created_at=ensure_aware(row.created_at),
        updated_at=ensure_aware(row.updated_at),
    )


class SqlCredentialStore:
    """SQLAlchemy-backed store.

    Every statement filters on ``tenant_id``. On PostgreSQL the tenant is also
    pinned into ``app.tenant_id`` for the transaction so the row-level
    security policy from migration 0001 applies.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def _open(self, tenant_id: str) -> Session:
        session = self._session_factory()
        if is_postgres(session):
            session.execute(
                text("SELECT set_config('app.tenant_id', :tenant_id, true)"),
                {"tenant_id": tenant_id},
            )
        return session

    def get(self, tenant_id: str) -> Optional[CredentialRecord]:
        session = self._open(tenant_id)
        try:
            row = (
                session.query(CredentialRecordDB)
                .filter(CredentialRecordDB.tenant_id == tenant_id)
                .one_or_none()
            )
            return _to_record(row) if row is not None else None
        finally:
            session.close()

    def put(
        self, record: CredentialRecord, expected_version: int | None = None
    ) -> CredentialRecord:
        session = self._open(record.tenant_id)
        try:
            row = (
                session.query(CredentialRecordDB)
                .filter(CredentialRecordDB.tenant_id == record.tenant_id)
                .one_or_none()
            )
            current_version = int(row.version) if row is not None else 0
            if expected_version is not None and not _guard_matches(
                _to_record(row) if row is not None else None, record, expected_version
            ):
                raise StaleWriteError(
                    record.tenant_id, expected_version, current_version
                )
            values = {
                "encrypted_access_token": record.encrypted_access_token,
                "encrypted_refresh_token": record.encrypted_refresh_token,
                "realm_id": record.realm_id,
                "access_expires_at": record.access_expires_at,
                "refresh_expires_at": record.refresh_expires_at,
                "status": CredentialStatus(record.status).value,
                "revoked": record.revoked,
                "updated_at": record.updated_at,
                "version": current_version + 1,
                "connection_id": record.connection_id,
            }
            if row is None:
                session.add(
                    CredentialRecordDB(
                        tenant_id=record.tenant_id,
                        created_at=record.created_at,
                        **values,
                    )
                )
            else:
                # Compare-and-swap on version so a concurrent writer in another
                # process cannot be silently overwritten.
                updated = (
                    session.query(CredentialRecordDB)
                    .filter(
                        CredentialRecordDB.tenant_id == record.tenant_id,
                        CredentialRecordDB.version == current_version,
                        CredentialRecordDB.connection_id == row.connection_id,
                    )
                    .update(values, synchronize_session=False)
                )
                if updated != 1:
                    session.rollback()
                    raise StaleWriteError(
                        record.tenant_id, current_version, None
                    )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise StaleWriteError(record.tenant_id, current_version, None) from exc
            fresh = (
                session.query(CredentialRecordDB)
                .filter(CredentialRecordDB.tenant_id == record.tenant_id)
                .one()
            )
            return _to_record(fresh)
        finally:
            session.close()

    def delete(self, tenant_id: str) -> None:
        session = self._open(tenant_id)
        try:
            session.query(CredentialRecordDB).filter(
                CredentialRecordDB.tenant_id == tenant_id
            ).delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()

    def purge_revoked(self, older_than: datetime) -> int:
        session = self._session_factory()
        try:
            if is_postgres(session):
                # Cross-tenant sweep; the RLS policy admits it only in maintenance mode.
                session.execute(text("SELECT set_config('app.maintenance', 'on', true)"))
            count = (
                session.query(CredentialRecordDB)
                .filter(
                    CredentialRecordDB.revoked.is_(True),
                    CredentialRecordDB.updated_at < older_than,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            logger.info(
                "qbo_credentials_purged",
                extra={"count": count, "older_than": older_than.astimezone(UTC).isoformat()},
            )
            return int(count or 0)
        finally:
            session.close()
