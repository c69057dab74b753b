"""
GoalSync - Error Taxonomy

Every failure raised by the auth core carries a stable ``error_code`` and
the HTTP status the API layer answers with. Nothing here is logged and
swallowed; callers decide.
"""

from enum import Enum
from typing import Optional


class GoalSyncError(Exception):
    """Base class for errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "BAD_REQUEST"

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ConfigurationError(GoalSyncError):
    """Signing secrets are missing. Fatal at startup."""
    status_code = 500
    error_code = "SERVER_ERROR"


class TokenErrorReason(str, Enum):
    """Why a token was rejected."""
    EXPIRED = "expired"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    INVALID_CLAIMS = "invalid_claims"
    WRONG_TYPE = "wrong_type"


class InvalidTokenError(GoalSyncError):
    """
    Raised when token verification fails.

    ``reason`` tells an expired token (client should refresh) apart from
    every other failure (client must re-authenticate).
    """
    status_code = 401
    error_code = "INVALID_TOKEN"

    def __init__(self, reason: TokenErrorReason, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(
            message or f"Token rejected: {reason.value}",
            error_code="TOKEN_EXPIRED" if reason == TokenErrorReason.EXPIRED else None,
        )

    @property
    def is_expired(self) -> bool:
        return self.reason == TokenErrorReason.EXPIRED


class AuthenticationRequiredError(GoalSyncError):
    """No bearer token was presented."""
    status_code = 401
    error_code = "NO_TOKEN"


class SessionNotFoundError(GoalSyncError):
    """No active session holds this refresh token. Re-authenticate, don't retry."""
    status_code = 401
    error_code = "SESSION_NOT_FOUND"


class DuplicateCredentialError(GoalSyncError):
    status_code = 409
    error_code = "DUPLICATE_CREDENTIAL"


class InvalidCredentialsError(GoalSyncError):
    status_code = 401
    error_code = "INVALID_CREDENTIALS"


class AccountInactiveError(GoalSyncError):
    status_code = 401
    error_code = "ACCOUNT_INACTIVE"


class UserNotFoundError(GoalSyncError):
    status_code = 401
    error_code = "USER_NOT_FOUND"


class PermissionDeniedError(GoalSyncError):
    status_code = 403
    error_code = "ADMIN_REQUIRED"


class ResourceNotFoundError(GoalSyncError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidResetTokenError(GoalSyncError):
    status_code = 400
    error_code = "INVALID_RESET_TOKEN"


class EmailDeliveryError(GoalSyncError):
    status_code = 500
    error_code = "EMAIL_DELIVERY_FAILED"
