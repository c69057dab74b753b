"""
GoalSync - JWT Token Service

Issues, verifies, rotates and revokes access/refresh token pairs.

Tokens:
- Access: short-lived (15 minutes), carries user identity and device
- Refresh: long-lived (30 days), carries a random jti; only its SHA-256
  hash is stored on the device session
- Password reset / email verification: single-purpose, signed with the
  access key, never accepted as access tokens

Security:
- Access and refresh tokens use distinct signing secrets
- Issuer, audience and type marker are checked on every verification
- Rotation is fail-closed: once the stored hash is swapped the old refresh
  token is dead, even if the response never reaches the client
"""

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from jose import jwt, JWTError, ExpiredSignatureError
from jose.exceptions import JWTClaimsError
from pydantic import BaseModel, Field

from goalsync.auth.sessions import SessionRegistry
from goalsync.errors import (
    ConfigurationError,
    InvalidTokenError,
    SessionNotFoundError,
    TokenErrorReason,
)
from goalsync.logging import get_logger


logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password-reset"
    EMAIL_VERIFICATION = "email-verification"


class TokenClaims(BaseModel):
    """
    Decoded JWT payload.

    Attributes:
        sub: Subject (user ID)
        email: User's email at issue time
        type: Token purpose marker
        device_id: Device the token was issued to (access/refresh)
        onboarding_completed: Access tokens only
        jti: Random token ID (refresh only)
    """
    sub: str = Field(..., description="User ID")
    email: str
    type: TokenType
    iss: str
    aud: str
    exp: int = Field(..., description="Expiration (epoch seconds)")
    iat: int = Field(..., description="Issued at (epoch seconds)")
    device_id: Optional[str] = None
    onboarding_completed: Optional[bool] = None
    jti: Optional[str] = None

    @property
    def user_id(self) -> UUID:
        return UUID(self.sub)


class TokenPair(BaseModel):
    """Access + refresh token pair returned to clients."""
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """
    JWT issuance and verification bound to a Session Registry.

    Example:
        >>> service = TokenService.from_settings(settings, sessions)
        >>> pair = await service.issue_token_pair(user_id=uid, email="a@x.com", device_id="D1")
        >>> claims = await service.verify_access(pair.access_token)
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        issuer: str = "goalsync-api",
        audience: str = "goalsync-frontend",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        password_reset_ttl: timedelta = timedelta(hours=1),
        email_verification_ttl: timedelta = timedelta(hours=24),
        sessions: Optional[SessionRegistry] = None,
    ):
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.password_reset_ttl = password_reset_ttl
        self.email_verification_ttl = email_verification_ttl
        self._sessions = sessions

    @classmethod
    def from_settings(cls, settings, sessions: Optional[SessionRegistry] = None) -> "TokenService":
        return cls(
            access_secret=settings.JWT_SECRET,
            refresh_secret=settings.JWT_REFRESH_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            password_reset_ttl=timedelta(hours=settings.PASSWORD_RESET_EXPIRE_HOURS),
            email_verification_ttl=timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS),
            sessions=sessions,
        )

    def check_configuration(self) -> None:
        """
        Raises:
            ConfigurationError: If either signing secret is empty
        """
        missing = [
            name
            for name, value in (
                ("JWT_SECRET", self._access_secret),
                ("JWT_REFRESH_SECRET", self._refresh_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Token signing secrets not configured: {', '.join(missing)}")

    # =========================================================================
    # Issuance
    # =========================================================================

    async def issue_token_pair(
        self,
        *,
        user_id: UUID,
        email: str,
        device_id: Optional[str] = None,
        onboarding_completed: bool = False,
    ) -> TokenPair:
        """
        Mint a fresh access/refresh pair. Pure: nothing is persisted.

        Args:
            user_id: Subject
            email: User's email
            device_id: Device the pair is bound to
            onboarding_completed: Carried in the access token

        Returns:
            TokenPair with both expiry instants (UTC)

        Raises:
            ConfigurationError: If a signing secret is missing
        """
        self.check_configuration()

        now = datetime.utcnow()
        access_expires_at = now + self.access_ttl
        refresh_expires_at = now + self.refresh_ttl

        access_payload = self._base_claims(user_id, email, TokenType.ACCESS, now, access_expires_at)
        access_payload["onboarding_completed"] = onboarding_completed
        refresh_payload = self._base_claims(user_id, email, TokenType.REFRESH, now, refresh_expires_at)
        refresh_payload["jti"] = secrets.token_hex(16)
        if device_id is not None:
            access_payload["device_id"] = device_id
            refresh_payload["device_id"] = device_id

        return TokenPair(
            access_token=jwt.encode(access_payload, self._access_secret, algorithm=self._algorithm),
            refresh_token=jwt.encode(refresh_payload, self._refresh_secret, algorithm=self._algorithm),
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    async def issue_password_reset_token(self, user_id: UUID, email: str) -> str:
        return self._issue_single_purpose(user_id, email, TokenType.PASSWORD_RESET, self.password_reset_ttl)

    async def issue_email_verification_token(self, user_id: UUID, email: str) -> str:
        return self._issue_single_purpose(
            user_id, email, TokenType.EMAIL_VERIFICATION, self.email_verification_ttl
        )

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_access(self, token: str) -> TokenClaims:
        """
        Verify an access token.

        Raises:
            InvalidTokenError: reason is EXPIRED when the client should refresh,
                anything else when it must re-authenticate
        """
        return self._decode(token, self._access_secret, TokenType.ACCESS)

    async def verify_refresh(self, token: str) -> TokenClaims:
        return self._decode(token, self._refresh_secret, TokenType.REFRESH)

    async def verify_password_reset_token(self, token: str) -> TokenClaims:
        return self._decode(token, self._access_secret, TokenType.PASSWORD_RESET)

    async def verify_email_verification_token(self, token: str) -> TokenClaims:
        return self._decode(token, self._access_secret, TokenType.EMAIL_VERIFICATION)

    # =========================================================================
    # Rotation and revocation
    # =========================================================================

    async def rotate_refresh(
        self,
        old_refresh_token: str,
        device_id: str,
        *,
        onboarding_completed: bool = False,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new pair.

        Process:
            1. Verify signature, claims and type of the old token
            2. Find the active, unexpired session holding it for device_id
            3. Mint a new pair
            4. Conditionally swap the stored hash; the loser of a race fails

        Raises:
            InvalidTokenError: Old token fails verification
            SessionNotFoundError: No session holds the old token (rotated,
                revoked, expired, or bound to another device)
        """
        claims = await self.verify_refresh(old_refresh_token)
        sessions = self._require_sessions()

        session = await sessions.find_for_refresh(device_id, old_refresh_token)
        if session is None:
            logger.warning("refresh_session_not_found", user_id=claims.sub, device_id=device_id)
            raise SessionNotFoundError("Session not found or expired")

        pair = await self.issue_token_pair(
            user_id=claims.user_id,
            email=claims.email,
            device_id=device_id,
            onboarding_completed=onboarding_completed,
        )

        replaced = await sessions.replace_refresh_token(
            device_id, old_refresh_token, pair.refresh_token, pair.refresh_expires_at
        )
        if not replaced:
            raise SessionNotFoundError("Session not found or expired")

        return pair

    async def revoke(self, refresh_token: str, device_id: str) -> bool:
        """
        Deactivate the device session holding ``refresh_token``.

        Returns:
            False when there was nothing to revoke
        """
        revoked = await self._require_sessions().deactivate_by_token(device_id, refresh_token)
        logger.info("session_revoked", device_id=device_id, revoked=revoked)
        return revoked

    async def revoke_all(self, user_id: UUID, except_device_id: Optional[str] = None) -> int:
        count = await self._require_sessions().deactivate_all(user_id, except_device_id)
        logger.info(
            "sessions_revoked_all",
            user_id=str(user_id),
            except_device_id=except_device_id,
            count=count,
        )
        return count

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_sessions(self) -> SessionRegistry:
        if self._sessions is None:
            raise ConfigurationError("TokenService has no session registry")
        return self._sessions

    def _base_claims(
        self,
        user_id: UUID,
        email: str,
        token_type: TokenType,
        issued_at: datetime,
        expires_at: datetime,
    ) -> dict:
        return {
            "sub": str(user_id),
            "email": email,
            "type": token_type.value,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": issued_at,
            "exp": expires_at,
        }

    def _issue_single_purpose(
        self,
        user_id: UUID,
        email: str,
        token_type: TokenType,
        ttl: timedelta,
    ) -> str:
        self.check_configuration()
        now = datetime.utcnow()
        payload = self._base_claims(user_id, email, token_type, now, now + ttl)
        payload["jti"] = secrets.token_hex(16)
        return jwt.encode(payload, self._access_secret, algorithm=self._algorithm)

    def _decode(self, token: str, secret: str, expected: TokenType) -> TokenClaims:
        self.check_configuration()

        if not token:
            raise InvalidTokenError(TokenErrorReason.MALFORMED)
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            raise InvalidTokenError(TokenErrorReason.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
            )
        except ExpiredSignatureError:
            raise InvalidTokenError(TokenErrorReason.EXPIRED, "Token has expired")
        except JWTClaimsError as e:
            raise InvalidTokenError(TokenErrorReason.INVALID_CLAIMS, f"Invalid token claims: {e}")
        except JWTError:
            raise InvalidTokenError(TokenErrorReason.BAD_SIGNATURE, "Token signature is invalid")

        if payload.get("type") != expected.value:
            raise InvalidTokenError(TokenErrorReason.WRONG_TYPE, f"Expected a {expected.value} token")

        try:
            return TokenClaims(**payload)
        except ValueError:
            raise InvalidTokenError(TokenErrorReason.MALFORMED, "Token payload is incomplete")
