"""Maintenance tasks for the QuickBooks connection store.

Examples (from repo root):
  python backend/scripts/qbo_maintenance.py purge --older-than-days 30
  python backend/scripts/qbo_maintenance.py generate-secret
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path


def _ensure_backend_on_path() -> None:
    backend_dir = Path(__file__).resolve().parents[1]
    if str(backend_dir) not in sys.path:
        sys.path.insert(0, str(backend_dir))


_ensure_backend_on_path()

from qbo_connect.db import SessionLocal  # noqa: E402
from qbo_connect.logging_config import configure_logging  # noqa: E402
from qbo_connect.services.cipher import generate_master_secret  # noqa: E402
from qbo_connect.services.credential_store import SqlCredentialStore  # noqa: E402
from qbo_connect.services.oauth_state import SqlOAuthStateStore  # noqa: E402

logger = logging.getLogger("qbo_maintenance")


def purge(session_factory=SessionLocal, older_than_days: int = 30, now: datetime | None = None) -> dict:
    """Delete revoked credentials past the retention window and expired OAuth states."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=older_than_days)
    credentials = SqlCredentialStore(session_factory).purge_revoked(cutoff)
    states = SqlOAuthStateStore(session_factory).purge_expired(now)
    report = {
        "revoked_credentials_purged": credentials,
        "expired_states_purged": states,
        "cutoff": cutoff.isoformat(),
    }
    logger.info("qbo_maintenance_purge_completed", extra=report)
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="QuickBooks connection maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    purge_cmd = sub.add_parser("purge", help="Remove revoked credentials and stale OAuth states")
    purge_cmd.add_argument(
        "--older-than-days",
        type=int,
        default=30,
        help="Retention window for revoked credentials (default: 30)",
    )
    sub.add_parser("generate-secret", help="Print a fresh QUICKBOOKS_ENCRYPTION_KEY value")

    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "generate-secret":
        print(generate_master_secret())
        return 0

    if args.older_than_days < 0:
        parser.error("--older-than-days must be non-negative")
    report = purge(older_than_days=args.older_than_days)
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    raise SystemExit(main())
