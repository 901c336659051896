"""Error taxonomy shared by the connection core and the HTTP surface."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool = False


class QboConnectError(Exception):
    """Base class for errors that map to a user-facing status."""

    code = "internal_error"
    status_code = 500
    retryable = False
    public_message = "Internal error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    def to_body(self) -> ErrorBody:
        # Only the class-level message is exposed; the instance message may
        # carry internal detail.
        return ErrorBody(
            code=self.code, message=self.public_message, retryable=self.retryable
        )


class Unauthenticated(QboConnectError):
    code = "unauthenticated"
    status_code = 401
    public_message = "Authentication required"


class Unauthorized(QboConnectError):
    code = "forbidden"
    status_code = 403
    public_message = "Insufficient permissions for this action"

    def __init__(self, message: Optional[str] = None, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class NoConnection(QboConnectError):
    code = "reconnect_required"
    status_code = 409
    public_message = "QuickBooks is not connected; reconnect to continue"


class RequiresReauth(QboConnectError):
    code = "reconnect_required"
    status_code = 409
    public_message = "QuickBooks authorization expired; reconnect to continue"


class TransientFailure(QboConnectError):
    code = "temporarily_unavailable"
    status_code = 503
    retryable = True
    public_message = "QuickBooks is temporarily unavailable; try again shortly"


class StateMismatch(QboConnectError):
    code = "invalid_state"
    status_code = 400
    public_message = "Authorization state is invalid or expired"


class AuthorizationCodeError(QboConnectError):
    code = "authorization_failed"
    status_code = 502
    public_message = "QuickBooks authorization failed; restart the connection flow"


class ConfigurationError(QboConnectError):
    code = "configuration_error"
    status_code = 500
    public_message = "Service is misconfigured"


class QuickBooksApiError(QboConnectError):
    code = "upstream_error"
    status_code = 502
    public_message = "QuickBooks rejected the request"

    def __init__(
        self, message: Optional[str] = None, status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.status = status


class DecryptError(Exception):
    """Stored ciphertext could not be authenticated or decrypted."""


class StaleWriteError(Exception):
    """A credential write lost the race against a newer version."""

    def __init__(self, tenant_id: str, expected: int, actual: Optional[int]) -> None:
        super().__init__(
            f"stale credential write for {tenant_id}: expected v{expected}, found v{actual}"
        )
        self.tenant_id = tenant_id
        self.expected = expected
        self.actual = actual


class ProviderRejected(Exception):
    """The token endpoint refused the grant (invalid/expired/revoked)."""

    def __init__(self, error: str, status: int) -> None:
        super().__init__(f"provider rejected grant: {error} ({status})")
        self.error = error
        self.status = status
