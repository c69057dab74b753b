"""
GoalSync - Authentication Database Models

SQLModel-based models for users, their linked credentials, and per-device
sessions. Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- Refresh tokens stored as SHA-256 hashes only
- All timestamps in UTC

Normalization that an ORM would do in save hooks is done here by explicit
functions that the stores call on their write paths.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, Boolean, DateTime, Integer, UniqueConstraint, Enum as SQLEnum


DEFAULT_REFRESH_LIFETIME = timedelta(days=30)


class Role(str, Enum):
    """User roles. Only flag checks are performed on them."""
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class Provider(str, Enum):
    """Identity providers a credential can come from."""
    LOCAL = "local"
    GOOGLE = "google"
    MICROSOFT = "microsoft"


OAUTH_PROVIDERS = frozenset({Provider.GOOGLE, Provider.MICROSOFT})


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


class User(SQLModel, table=True):
    """
    Identity anchor.

    Attributes:
        id: Unique identifier (UUIDv4)
        email: Login identifier (unique, lower-cased)
        role: Role flag checked by admin-only operations
        is_active: Soft-delete flag; inactive users cannot authenticate
        is_email_verified: Set by the email verification flow
        onboarding_completed: Carried in access token claims
        deactivated_at: When the account was soft-deleted
    """
    __tablename__ = "users"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(
        sa_column=Column(String(254), unique=True, index=True, nullable=False),
    )
    name: str = Field(sa_column=Column(String(100), nullable=False))
    role: Role = Field(
        default=Role.USER, sa_column=Column(SQLEnum(Role), nullable=False, default=Role.USER),
    )
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    is_email_verified: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False),
    )
    onboarding_completed: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False),
    )
    last_active_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    )
    deactivated_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime, nullable=True),
    )


class Credential(SQLModel, table=True):
    """
    One linked identity of a user (local password or OAuth account).

    (provider, provider_id) is globally unique; a user holds at most one
    credential per provider.
    """
    __tablename__ = "user_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_id", name="uq_user_accounts_provider"),
        UniqueConstraint("user_id", "provider", name="uq_user_accounts_user_provider"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", nullable=False, index=True)
    provider: Provider = Field(sa_column=Column(SQLEnum(Provider), nullable=False))
    provider_id: str = Field(sa_column=Column(String(255), nullable=False))
    email: str = Field(sa_column=Column(String(254), nullable=False, index=True))

    # Local provider only
    password_hash: Optional[str] = Field(
        default=None, sa_column=Column(String(255), nullable=True),
    )
    password_reset_token_hash: Optional[str] = Field(
        default=None, sa_column=Column(String(64), nullable=True),
    )
    password_reset_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime, nullable=True),
    )

    # OAuth providers only
    oauth_access_token: Optional[str] = Field(
        default=None, sa_column=Column(String(2048), nullable=True),
    )
    oauth_refresh_token: Optional[str] = Field(
        default=None, sa_column=Column(String(2048), nullable=True),
    )
    oauth_token_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime, nullable=True),
    )

    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    is_verified: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    login_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_used_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )


class UserSession(SQLModel, table=True):
    """
    One logged-in device.

    The row is keyed by ``device_id``: logging in again from the same device
    overwrites and reactivates it. ``refresh_token_hash`` holds the only
    refresh token that may be rotated; it is nulled on deactivation.
    """
    __tablename__ = "user_sessions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", nullable=False, index=True)
    device_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False),
    )
    refresh_token_hash: Optional[str] = Field(
        default=None, sa_column=Column(String(64), nullable=True, index=True),
    )
    refresh_token_expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True, index=True))

    # Device metadata
    device_name: str = Field(sa_column=Column(String(100), nullable=False))
    device_type: DeviceType = Field(
        default=DeviceType.UNKNOWN, sa_column=Column(SQLEnum(DeviceType), nullable=False, default=DeviceType.UNKNOWN),
    )
    browser: Optional[str] = Field(default=None, sa_column=Column(String(50), nullable=True))
    os: Optional[str] = Field(default=None, sa_column=Column(String(50), nullable=True))
    ip_address: Optional[str] = Field(default=None, sa_column=Column(String(45), nullable=True))
    user_agent: Optional[str] = Field(default=None, sa_column=Column(String(500), nullable=True))

    login_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    last_active_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, index=True),
    )
    logout_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    )


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively; store them lower-cased."""
    return email.strip().lower()


def is_verified_on_creation(provider: Provider) -> bool:
    """OAuth providers have already verified the address."""
    return provider in OAUTH_PROVIDERS


def default_refresh_expiry(now: Optional[datetime] = None) -> datetime:
    return (now or datetime.utcnow()) + DEFAULT_REFRESH_LIFETIME
