"""
GoalSync - Authentication Package

Token lifecycle and per-device sessions with:
- Access/refresh JWT pairs with rotation
- One durable session per device
- bcrypt password hashing
"""

from goalsync.auth.models import User, Credential, UserSession, Role, Provider
from goalsync.auth.sessions import SessionRegistry, DeviceInfo
from goalsync.auth.tokens import TokenService, TokenPair, TokenClaims

__all__ = [
    "User",
    "Credential",
    "UserSession",
    "Role",
    "Provider",
    "SessionRegistry",
    "DeviceInfo",
    "TokenService",
    "TokenPair",
    "TokenClaims",
]
