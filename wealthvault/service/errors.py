from __future__ import annotations

from enum import Enum
from typing import Optional

# Outward message for every authentication failure that must not reveal which
# factor failed (unknown identifier, wrong password, bad MFA code, ...).
GENERIC_AUTH_FAILURE = "authentication failed"


class ErrorKind(str, Enum):
    """Stable error kinds surfaced across the auth core boundaries."""

    CONFIGURATION_ERROR = "configuration_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_TOKEN = "invalid_mfa_token"
    INVALID_MFA_CODE = "invalid_mfa_code"
    MFA_NOT_ENROLLED = "mfa_not_enrolled"
    RECOVERY_CODE_CONSUMED = "recovery_code_consumed"
    EXPIRED_TOKEN = "expired_token"
    MALFORMED_TOKEN = "malformed_token"
    REVOKED_TOKEN = "revoked_token"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    SESSION_NOT_FOUND = "session_not_found"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code``, a stable ``error_code`` and the
    matching :class:`ErrorKind`, so callers can branch on ``exc.kind`` rather
    than on message text. ``public_message`` is what leaves the process;
    ``message`` may carry the internal reason for audit logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[ErrorKind] = None
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def outward_message(self) -> str:
        return self.public_message or self.message


class ConfigurationError(ServiceError):
    """Signing secret or other startup configuration is unusable."""

    status_code = 500
    error_code = ErrorKind.CONFIGURATION_ERROR.value
    kind = ErrorKind.CONFIGURATION_ERROR
    public_message = "server misconfigured"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"
    public_message = GENERIC_AUTH_FAILURE


class InvalidCredentialsError(AuthenticationError):
    error_code = ErrorKind.INVALID_CREDENTIALS.value
    kind = ErrorKind.INVALID_CREDENTIALS


class MFARequiredError(AuthenticationError):
    """Credentials were valid but a second factor must be supplied."""

    error_code = ErrorKind.MFA_REQUIRED.value
    kind = ErrorKind.MFA_REQUIRED
    public_message = "mfa code required"


class InvalidMFATokenError(AuthenticationError):
    """Neither the TOTP code nor any unused recovery code matched at login."""

    error_code = ErrorKind.INVALID_MFA_TOKEN.value
    kind = ErrorKind.INVALID_MFA_TOKEN


class ExpiredTokenError(AuthenticationError):
    error_code = ErrorKind.EXPIRED_TOKEN.value
    kind = ErrorKind.EXPIRED_TOKEN
    public_message = "token expired"


class MalformedTokenError(AuthenticationError):
    error_code = ErrorKind.MALFORMED_TOKEN.value
    kind = ErrorKind.MALFORMED_TOKEN


class RevokedTokenError(AuthenticationError):
    """Token is cryptographically valid but has been blacklisted."""

    error_code = ErrorKind.REVOKED_TOKEN.value
    kind = ErrorKind.REVOKED_TOKEN
    public_message = "token revoked"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = ErrorKind.INVALID_REFRESH_TOKEN.value
    kind = ErrorKind.INVALID_REFRESH_TOKEN


class InvalidMFACodeError(ServiceError):
    """Enrollment confirmation code did not match the pending secret."""

    status_code = 400
    error_code = ErrorKind.INVALID_MFA_CODE.value
    kind = ErrorKind.INVALID_MFA_CODE
    public_message = "invalid mfa code"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    """Session does not exist or is not owned by the caller."""

    error_code = ErrorKind.SESSION_NOT_FOUND.value
    kind = ErrorKind.SESSION_NOT_FOUND
    public_message = "session not found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""

    status_code = 409
    error_code = "conflict"


class MFANotEnrolledError(ConflictError):
    error_code = ErrorKind.MFA_NOT_ENROLLED.value
    kind = ErrorKind.MFA_NOT_ENROLLED


class RecoveryCodeConsumedError(ConflictError):
    error_code = ErrorKind.RECOVERY_CODE_CONSUMED.value
    kind = ErrorKind.RECOVERY_CODE_CONSUMED


class ServiceUnavailableError(ServiceError):
    """Persistent store unreachable or timed out; callers may retry with backoff."""

    status_code = 503
    error_code = ErrorKind.SERVICE_UNAVAILABLE.value
    kind = ErrorKind.SERVICE_UNAVAILABLE
    public_message = "service temporarily unavailable"


__all__ = [
    "GENERIC_AUTH_FAILURE",
    "ErrorKind",
    "ServiceError",
    "ConfigurationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MFARequiredError",
    "InvalidMFATokenError",
    "ExpiredTokenError",
    "MalformedTokenError",
    "RevokedTokenError",
    "InvalidRefreshTokenError",
    "InvalidMFACodeError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "MFANotEnrolledError",
    "RecoveryCodeConsumedError",
    "ServiceUnavailableError",
]
