from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any, List, Protocol

from sqlalchemy.orm import sessionmaker

from ..db import SessionLocal
from ..db_models import AuditEntryDB
from ..metrics import metrics
from ..models import AuditEntry, AuditOutcome

logger = logging.getLogger(__name__)

# Canonical payloads longer than this are truncated before hashing.
MAX_PAYLOAD_CHARS = 8000
REDACTED = "[redacted]"
_SECRET_MARKERS = ("token", "secret", "password", "code", "authorization", "key")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): (REDACTED if _is_secret_key(str(k)) else _redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def payload_digest(payload: Any) -> str | None:
    """Return a sha256 hex digest of the redacted, canonical payload.

    Values under secret-looking keys are replaced before hashing so the
    digest cannot be used to confirm a guessed token.
    """
    if payload is None:
        return None
    canonical = json.dumps(
        _redact(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical[:MAX_PAYLOAD_CHARS].encode("utf-8")).hexdigest()


class AuditSink(Protocol):
    """Append-only record of privileged operations.

    ``record`` must never raise; the guarded operation's outcome does not
    depend on audit durability.
    """

    def record(self, entry: AuditEntry) -> None: ...


def _log_failure(entry: AuditEntry) -> None:
    metrics.audit_write_failures += 1
    logger.exception(
        "audit_write_failed",
        extra={
            "action": entry.action,
            "actor_user_id": entry.actor_user_id,
            "team_id": entry.team_id,
        },
    )


class SqlAuditSink:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def record(self, entry: AuditEntry) -> None:
        try:
            session = self._session_factory()
            try:
                session.add(
                    AuditEntryDB(
                        actor_user_id=entry.actor_user_id,
                        team_id=entry.team_id,
                        action=entry.action[:64],
                        target_kind=entry.target_kind[:64],
                        target_id=entry.target_id,
                        outcome=AuditOutcome(entry.outcome).value,
                        payload_digest=entry.payload_digest,
                        created_at=entry.created_at,
                    )
                )
                session.commit()
            finally:
                session.close()
        except Exception:  # never break the guarded operation
            _log_failure(entry)
            return
        metrics.audit_entries_written += 1


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)
        metrics.audit_entries_written += 1


class LoggingAuditSink:
    """Emits entries as structured log records only."""

    def record(self, entry: AuditEntry) -> None:
        try:
            logger.info(
                "audit_entry",
                extra={
                    "actor_user_id": entry.actor_user_id,
                    "team_id": entry.team_id,
                    "action": entry.action,
                    "target_kind": entry.target_kind,
                    "target_id": entry.target_id,
                    "outcome": AuditOutcome(entry.outcome).value,
                    "payload_digest": entry.payload_digest,
                },
            )
        except Exception:  # never break the guarded operation
            _log_failure(entry)
            return
        metrics.audit_entries_written += 1


def safe_record(sink: AuditSink, entry: AuditEntry) -> None:
    """Call ``sink.record`` and contain anything a third-party sink raises."""
    try:
        sink.record(entry)
    except Exception:
        _log_failure(entry)
