from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class Metrics:
    qbo_connections: int = 0
    qbo_disconnections: int = 0
    token_refreshes: int = 0
    token_refresh_failures: int = 0
    token_refresh_joined: int = 0
    token_stale_writes: int = 0
    reauth_required: int = 0
    decrypt_errors: int = 0
    authorization_denials: int = 0
    authorization_denials_by_capability: Dict[str, int] = field(default_factory=dict)
    audit_entries_written: int = 0
    audit_write_failures: int = 0
    qbo_api_errors: int = 0

    def record_denial(self, capability: str) -> None:
        self.authorization_denials += 1
        self.authorization_denials_by_capability[capability] = (
            self.authorization_denials_by_capability.get(capability, 0) + 1
        )

    def reset(self) -> None:
        fresh = Metrics()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "qbo_connections": self.qbo_connections,
            "qbo_disconnections": self.qbo_disconnections,
            "token_refreshes": self.token_refreshes,
            "token_refresh_failures": self.token_refresh_failures,
            "token_refresh_joined": self.token_refresh_joined,
            "token_stale_writes": self.token_stale_writes,
            "reauth_required": self.reauth_required,
            "decrypt_errors": self.decrypt_errors,
            "authorization_denials": self.authorization_denials,
            "authorization_denials_by_capability": dict(
                self.authorization_denials_by_capability
            ),
            "audit_entries_written": self.audit_entries_written,
            "audit_write_failures": self.audit_write_failures,
            "qbo_api_errors": self.qbo_api_errors,
        }


metrics = Metrics()
