"""
GoalSync - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator
import re

from goalsync.auth.models import DeviceType, Role


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


def _normalize_email(v: str) -> str:
    v = v.strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


def _password_complexity(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    return v


class DeviceFields(BaseModel):
    """
    Device description sent with login and signup.

    device_id is a stable identifier generated by the client. When it is
    omitted the server generates one and returns it.
    """
    device_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=100)
    device_type: DeviceType = DeviceType.UNKNOWN
    browser: Optional[str] = Field(default=None, max_length=50)
    os: Optional[str] = Field(default=None, max_length=50)


class SignupRequest(DeviceFields):
    """Request body for POST /auth/signup."""
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=8, description="User password")

    @validator("email")
    def email_format(cls, v):
        """Basic email format validation (allows .local for development)."""
        return _normalize_email(v)

    @validator("password")
    def password_complexity(cls, v):
        return _password_complexity(v)


class LoginRequest(DeviceFields):
    """Request body for POST /auth/login."""
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1, max_length=128)


class LogoutRequest(BaseModel):
    """
    Request body for POST /auth/logout.

    device_id defaults to the device bound to the access token.
    """
    device_id: Optional[str] = Field(default=None, max_length=128)
    refresh_token: Optional[str] = None


class LogoutAllRequest(BaseModel):
    """Request body for POST /auth/logout-all (optional)."""
    keep_current: bool = Field(
        default=False,
        description="Keep the calling device signed in",
    )


class ForgotPasswordRequest(BaseModel):
    email: str

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)

    @validator("new_password")
    def password_complexity(cls, v):
        return _password_complexity(v)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    """Response body for GET /users/me."""
    id: UUID
    email: str
    name: str
    role: Role
    is_email_verified: bool
    onboarding_completed: bool
    created_at: datetime

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    """Response body for signup and login."""
    user: UserResponse
    tokens: TokenResponse
    device_id: str = Field(..., description="Persist and send on refresh/logout")


class SessionResponse(BaseModel):
    """One entry of GET /users/sessions."""
    id: UUID
    device_id: str
    device_name: str
    device_type: DeviceType
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    login_at: datetime
    last_active_at: datetime
    is_current: bool = False

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    message: str


class LogoutResponse(BaseModel):
    """Response body for logout."""
    message: str = Field(default="Logged out successfully")
    sessions_invalidated: int = Field(default=1)
