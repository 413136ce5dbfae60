from __future__ import annotations

from enum import Enum


class SynologyPhotosError(RuntimeError):
    """Base class for every failure raised while talking to the NAS."""


class ResolutionError(SynologyPhotosError):
    """Raised when no connection candidate answers with a valid API-info payload."""


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NEEDS_OTP = "needs_otp"
    INVALID_OTP = "invalid_otp"
    ACCOUNT_DISABLED = "account_disabled"
    PERMISSION_DENIED = "permission_denied"
    SESSION_EXPIRED = "session_expired"
    UNKNOWN = "unknown"


AUTH_ERROR_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid username or password",
    AuthErrorKind.NEEDS_OTP: (
        "Two-factor authentication is enabled; register this device with "
        "'synology-photos register-device'"
    ),
    AuthErrorKind.INVALID_OTP: "Invalid OTP code or expired device token; register this device again",
    AuthErrorKind.ACCOUNT_DISABLED: "Account is disabled",
    AuthErrorKind.PERMISSION_DENIED: "Permission denied",
    AuthErrorKind.SESSION_EXPIRED: "Session expired",
    AuthErrorKind.UNKNOWN: "Login failed",
}


class AuthError(SynologyPhotosError):
    """Raised when the NAS rejects a login or an authenticated request."""

    def __init__(self, kind: AuthErrorKind, code: int | None = None, message: str | None = None) -> None:
        self.kind = kind
        self.code = code
        if message is None:
            message = AUTH_ERROR_MESSAGES[kind]
            if code is not None:
                message = f"{message} (error code: {code})"
        self.message = message
        super().__init__(message)


class SessionExpiredError(AuthError):
    def __init__(self, code: int | None = None) -> None:
        super().__init__(AuthErrorKind.SESSION_EXPIRED, code)


class FetchErrorKind(str, Enum):
    SOURCE_UNAVAILABLE = "source_unavailable"
    MALFORMED_RESPONSE = "malformed_response"


class FetchError(SynologyPhotosError):
    """Raised when a photo listing cannot be retrieved or parsed."""

    def __init__(self, kind: FetchErrorKind, message: str, code: int | None = None) -> None:
        self.kind = kind
        self.code = code
        self.message = message
        super().__init__(message)


class ProxyErrorKind(str, Enum):
    MISSING_TARGET = "missing_target"
    UPSTREAM_FAILURE = "upstream_failure"
    NOT_READY = "not_ready"


class ProxyError(SynologyPhotosError):
    """Raised when a thumbnail cannot be relayed; scoped to a single image request."""

    def __init__(self, kind: ProxyErrorKind, message: str, status_code: int) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NonJsonPayloadError(SynologyPhotosError):
    """Raised when an endpoint answers with something other than a JSON object, e.g. a relay HTML page."""
