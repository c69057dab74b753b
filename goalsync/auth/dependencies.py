"""
GoalSync - Security Dependencies

FastAPI dependencies for authentication and role checks.

Usage:
    @router.get("/protected")
    async def protected_route(user: AuthenticatedUser = Depends(get_current_user)):
        ...

    @router.get("/admin-only")
    async def admin_route(user: AuthenticatedUser = Depends(require_admin)):
        ...

Security:
- Every protected request verifies the access token and that its user is
  still present and active
- Only role flags are checked; there is no policy engine
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from goalsync.auth.models import Role
from goalsync.auth.service import AuthService
from goalsync.errors import AuthenticationRequiredError, PermissionDeniedError
from goalsync.realtime.tracker import ConnectionTracker


# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """
    Represents a validated, authenticated user.

    Available in route handlers via Depends(get_current_user).
    """
    user_id: UUID
    email: str
    name: str
    role: Role
    device_id: Optional[str] = None
    onboarding_completed: bool = False


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_tracker(request: Request) -> ConnectionTracker:
    return request.app.state.tracker


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthenticatedUser:
    """
    Validate request authentication and return current user.

    Raises:
        AuthenticationRequiredError: No bearer token (401 NO_TOKEN)
        InvalidTokenError: 401 TOKEN_EXPIRED / INVALID_TOKEN
        UserNotFoundError, AccountInactiveError: 401
    """
    if credentials is None:
        raise AuthenticationRequiredError("Missing authentication token")

    claims, user = await auth_service.authenticate_access_token(credentials.credentials)
    await auth_service.record_activity(user.id, claims.device_id)
    return AuthenticatedUser(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        device_id=claims.device_id,
        onboarding_completed=user.onboarding_completed,
    )


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Dependency that requires the admin role."""
    if user.role != Role.ADMIN:
        raise PermissionDeniedError("Admin access required")
    return user
