"""
GoalSync - Authentication Routes

API endpoints for authentication:
- POST /auth/signup           - Create local account and sign the device in
- POST /auth/login            - Authenticate with email and password
- POST /auth/refresh          - Rotate the refresh token
- POST /auth/logout           - End this device's session
- POST /auth/logout-all       - End every session of the user
- POST /auth/forgot-password  - Send a password reset link
- POST /auth/reset-password   - Set a new password with a reset token
- POST /auth/verify-email     - Confirm the email address

And for the signed-in user:
- GET    /users/me               - Current user
- GET    /users/sessions         - Active devices
- DELETE /users/sessions/{id}    - Revoke one device
- DELETE /users/account          - Deactivate the account

Revocations take effect on live realtime connections immediately.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from goalsync.auth.dependencies import AuthenticatedUser, get_auth_service, get_current_user
from goalsync.auth.schemas import (
    AuthResponse,
    DeviceFields,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllRequest,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignupRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from goalsync.auth.service import AuthResult, AuthService
from goalsync.auth.sessions import DeviceInfo, generate_device_id
from goalsync.errors import UserNotFoundError


router = APIRouter(prefix="/auth", tags=["authentication"])
users_router = APIRouter(prefix="/users", tags=["users"])


FORGOT_PASSWORD_MESSAGE = (
    "If an account with this email exists, you will receive a password reset link."
)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return request.headers.get("User-Agent", "unknown")[:500]


def build_device(request: Request, fields: DeviceFields) -> DeviceInfo:
    return DeviceInfo(
        device_id=fields.device_id or generate_device_id(),
        device_name=fields.device_name or "Unknown device",
        device_type=fields.device_type,
        browser=fields.browser,
        os=fields.os,
        ip_address=get_client_ip(request)[:45],
        user_agent=get_user_agent(request),
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.model_validate(result.user),
        tokens=TokenResponse(**result.tokens.model_dump()),
        device_id=result.device_id,
    )


# =============================================================================
# Authentication
# =============================================================================

@router.post(
    "/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a local account",
)
async def signup(
    request: Request,
    body: SignupRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Create a user with a local password credential and sign the device in.

    Raises:
        409: Email already registered
    """
    result = await auth_service.signup(body.name, body.email, body.password, build_device(request, body))
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse, summary="Authenticate with email and password")
async def login(
    request: Request,
    body: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Raises:
        401: INVALID_CREDENTIALS or ACCOUNT_INACTIVE
    """
    result = await auth_service.login(body.email, body.password, build_device(request, body))
    return _auth_response(result)


@router.post("/refresh", response_model=TokenResponse, summary="Rotate the refresh token")
async def refresh(
    body: RefreshRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Exchange a refresh token for a new pair. The presented token stops
    working as soon as this succeeds.

    Raises:
        401: SESSION_NOT_FOUND, TOKEN_EXPIRED or INVALID_TOKEN
    """
    pair = await auth_service.refresh(body.refresh_token, body.device_id)
    return TokenResponse(**pair.model_dump())


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    body: Optional[LogoutRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """End the session of one device and close its realtime connections."""
    body = body or LogoutRequest()
    device_id = body.device_id or user.device_id
    if not device_id:
        return LogoutResponse(sessions_invalidated=0)

    revoked = await auth_service.logout(user.user_id, device_id, body.refresh_token)
    return LogoutResponse(sessions_invalidated=1 if revoked else 0)


@router.post("/logout-all", response_model=LogoutResponse)
async def logout_all(
    body: Optional[LogoutAllRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """End every session of the user, optionally keeping the calling device."""
    body = body or LogoutAllRequest()
    except_device_id = user.device_id if body.keep_current else None

    count = await auth_service.logout_all(user.user_id, except_device_id)
    return LogoutResponse(message="Logged out from all devices successfully", sessions_invalidated=count)


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """Always answers the same way whether or not the account exists."""
    await auth_service.request_password_reset(body.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Raises:
        400: INVALID_RESET_TOKEN
    """
    await auth_service.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password reset successfully. Please log in with your new password.")


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    body: VerifyEmailRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    await auth_service.verify_email(body.token)
    return MessageResponse(message="Email verified successfully")


# =============================================================================
# Current user
# =============================================================================

@users_router.get("/me", response_model=UserResponse)
async def get_me(
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    record = await auth_service.credentials.find_user_by_id(user.user_id)
    if record is None:
        raise UserNotFoundError("User not found")
    return UserResponse.model_validate(record)


@users_router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Active devices, most recently active first; the caller's is flagged."""
    sessions = await auth_service.list_sessions(user.user_id)
    responses = []
    for session in sessions:
        response = SessionResponse.model_validate(session)
        response.is_current = session.device_id == user.device_id
        responses.append(response)
    return responses


@users_router.delete("/sessions/{session_id}", response_model=LogoutResponse)
async def revoke_session(
    session_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Raises:
        404: Session does not exist or belongs to another user
    """
    revoked = await auth_service.revoke_session(user.user_id, session_id)
    return LogoutResponse(message="Session revoked", sessions_invalidated=1 if revoked else 0)


@users_router.delete("/account", response_model=MessageResponse)
async def delete_account(
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Soft-delete the account and sign out every device."""
    await auth_service.deactivate_account(user.user_id)
    return MessageResponse(message="Account deactivated")
