from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


class QuickBooksSettings(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: str = "com.intuit.quickbooks.accounting"
    sandbox: bool = True
    minor_version: int = 65
    request_timeout_seconds: float = 10.0

    @property
    def authorize_base(self) -> str:
        return "https://appcenter.intuit.com/connect/oauth2"

    @property
    def token_base(self) -> str:
        return "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"

    @property
    def revoke_base(self) -> str:
        return "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

    @property
    def api_base(self) -> str:
        return (
            "https://sandbox-quickbooks.api.intuit.com"
            if self.sandbox
            else "https://quickbooks.api.intuit.com"
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


class CredentialSettings(BaseModel):
    # Rotating this value invalidates every stored credential; tenants must
    # reconnect afterwards.
    encryption_key: str | None = None
    kdf_iterations: int = 100_000
    refresh_buffer_seconds: int = 300


class OAuthStateSettings(BaseModel):
    ttl_seconds: int = 600


class AppSettings(BaseModel):
    quickbooks: QuickBooksSettings = QuickBooksSettings()
    credentials: CredentialSettings = CredentialSettings()
    oauth_state: OAuthStateSettings = OAuthStateSettings()
    environment: str = "dev"
    # "sql" persists audit entries; "log" only emits audit_entry log records.
    audit_sink: str = "sql"

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        quickbooks = QuickBooksSettings(
            client_id=os.getenv("QBO_CLIENT_ID"),
            client_secret=os.getenv("QBO_CLIENT_SECRET"),
            redirect_uri=os.getenv("QBO_REDIRECT_URI"),
            scopes=os.getenv("QBO_SCOPES", "com.intuit.quickbooks.accounting"),
            sandbox=os.getenv("QBO_SANDBOX", "true").lower() != "false",
            minor_version=int(os.getenv("QBO_MINOR_VERSION", "65")),
            request_timeout_seconds=float(
                os.getenv("QBO_REQUEST_TIMEOUT_SECONDS", "10")
            ),
        )
        raw_iterations = os.getenv("CREDENTIAL_KDF_ITERATIONS", "100000")
        try:
            kdf_iterations = int(raw_iterations)
        except ValueError:
            kdf_iterations = 100_000
        credentials = CredentialSettings(
            encryption_key=os.getenv("QUICKBOOKS_ENCRYPTION_KEY"),
            kdf_iterations=kdf_iterations,
            refresh_buffer_seconds=int(
                os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", "300")
            ),
        )
        oauth_state = OAuthStateSettings(
            ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
        )
        return cls(
            quickbooks=quickbooks,
            credentials=credentials,
            oauth_state=oauth_state,
            environment=(os.getenv("ENVIRONMENT", "dev") or "dev").lower(),
            audit_sink=(os.getenv("AUDIT_SINK", "sql") or "sql").lower(),
        )

    def validate_combinations(self) -> None:
        """Warn when the integration is partially configured to avoid runtime surprises."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if self.quickbooks.client_id and not self.quickbooks.client_secret:
            warnings.append("QBO_CLIENT_SECRET is missing while QBO_CLIENT_ID is set.")
        if self.quickbooks.client_id and not self.quickbooks.redirect_uri:
            warnings.append("QBO_REDIRECT_URI is missing while QBO_CLIENT_ID is set.")
        if not self.credentials.encryption_key:
            warnings.append(
                "QUICKBOOKS_ENCRYPTION_KEY is not set; credentials cannot be stored."
            )
        if self.credentials.kdf_iterations < 10_000 and self.environment in {
            "prod",
            "production",
        }:
            warnings.append("CREDENTIAL_KDF_ITERATIONS is too low for production.")
        if self.audit_sink not in {"sql", "log"}:
            warnings.append(
                f"AUDIT_SINK={self.audit_sink!r} is not recognised; using the database sink."
            )
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return application settings loaded from the environment.

    The result is cached for the lifetime of the process so configuration
    is stable and we avoid repeatedly parsing environment variables.
    """
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
