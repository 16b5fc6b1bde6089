from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a stable ``error_code`` that
    clients can switch on, and a short ``title`` used as the envelope
    ``message``. The instance message is the human-readable ``error`` text.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    title: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.title
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (422)."""
    status_code = 422
    error_code = "validation_error"
    title = "Validation failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    title = "Unauthorized"


class UnauthorizedError(AuthenticationError):
    """No usable bearer credential on the request."""


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    title = "Invalid credentials"


class UserNotFoundError(AuthenticationError):
    error_code = "user_not_found"
    title = "User not found"


class SessionInvalidError(AuthenticationError):
    """Session is missing, terminated, expired, or owned by another account.

    This is the "session expired or invalid" failure; clients match it on
    ``session_invalid``.
    """

    error_code = "session_invalid"
    title = "Session invalid"


class SessionTerminatedError(AuthenticationError):
    error_code = "session_terminated"
    title = "Session terminated"


class TokenBlacklistedError(SessionTerminatedError):
    """The token id was revoked by a logout or a refresh."""
    error_code = "token_blacklisted"
    title = "Token revoked"


class TokenRefreshFailedError(AuthenticationError):
    error_code = "token_refresh_failed"
    title = "Token refresh failed"


class SessionNotAuthorizedError(AuthenticationError):
    """Caller tried to act on a session it does not own."""
    error_code = "session_not_authorized"
    title = "Session not authorized"


class TokenError(AuthenticationError):
    """Base for failures raised while verifying a bearer token."""
    error_code = "token_invalid"
    title = "Invalid token"


class TokenExpiredError(TokenError):
    error_code = "token_expired"
    title = "Token expired"


class InvalidSignatureError(TokenError):
    error_code = "token_invalid"


class MalformedTokenError(TokenError):
    error_code = "token_malformed"
    title = "Malformed token"


class WrongTokenTypeError(TokenError):
    error_code = "token_invalid"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    title = "Conflict"


class AccountExistsError(ConflictError):
    error_code = "already_exists"
    title = "Account already exists"


class ServiceUnavailableError(ServiceError):
    """Session store unreachable or timed out (503)."""
    status_code = 503
    error_code = "unavailable"
    title = "Service unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    title = "Internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "UserNotFoundError",
    "SessionInvalidError",
    "SessionTerminatedError",
    "TokenBlacklistedError",
    "TokenRefreshFailedError",
    "SessionNotAuthorizedError",
    "TokenError",
    "TokenExpiredError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "WrongTokenTypeError",
    "ConflictError",
    "AccountExistsError",
    "ServiceUnavailableError",
    "ServerError",
]
