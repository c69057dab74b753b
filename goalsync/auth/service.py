"""
GoalSync - Authentication Service

Orchestrates the auth flows on top of the Credential Store, Token Service,
Session Registry and Connection Tracker.

Every revocation path follows the same order:
    1. Update the Session Registry (the source of truth)
    2. Force-disconnect the affected realtime connections
so a client that reconnects after the notice is already locked out.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from goalsync.auth.credentials import CredentialStore, OAuthProfile, OAuthTokens
from goalsync.auth.email import EmailSender
from goalsync.auth.models import User, UserSession, Provider, OAUTH_PROVIDERS
from goalsync.auth.sessions import SessionRegistry, DeviceInfo
from goalsync.auth.tokens import TokenService, TokenPair, TokenClaims
from goalsync.errors import (
    AccountInactiveError,
    EmailDeliveryError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    ResourceNotFoundError,
    SessionNotFoundError,
    UserNotFoundError,
)
from goalsync.logging import get_logger
from goalsync.realtime.tracker import ConnectionTracker


logger = get_logger(__name__)


REASON_LOGGED_OUT = "Logged out"
REASON_LOGGED_OUT_EVERYWHERE = "Logged out from all devices"
REASON_PASSWORD_RESET = "Password was reset"
REASON_SESSION_REVOKED = "Session revoked"
REASON_ACCOUNT_DELETED = "Account deleted"


@dataclass
class AuthResult:
    """Outcome of a successful authentication."""
    user: User
    tokens: TokenPair
    device_id: str


class AuthService:
    """
    Auth flows used by the HTTP routes and the realtime handshake.

    Args:
        credentials: Users and credentials
        sessions: Per-device sessions
        tokens: JWT issuance and verification
        tracker: Live realtime connections
        email_sender: Password reset / verification delivery
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionRegistry,
        tokens: TokenService,
        tracker: ConnectionTracker,
        email_sender: EmailSender,
    ):
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.tracker = tracker
        self.email_sender = email_sender

    # =========================================================================
    # Authentication
    # =========================================================================

    async def signup(self, name: str, email: str, password: str, device: DeviceInfo) -> AuthResult:
        """
        Create a local account and sign the device in.

        Raises:
            DuplicateCredentialError: Email already registered
        """
        user, credential = await self.credentials.create_local_user(name, email, password)
        result = await self._establish_session(user, credential.id, device)

        try:
            token = await self.tokens.issue_email_verification_token(user.id, user.email)
            await self.email_sender.send_email_verification(user.email, token)
        except EmailDeliveryError as exc:
            # The account exists; the user can request another verification mail.
            logger.warning("verification_email_failed", user_id=str(user.id), error=exc.message)

        return result

    async def login(self, email: str, password: str, device: DeviceInfo) -> AuthResult:
        """
        Local email + password login.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountInactiveError: User or credential deactivated
        """
        credential = await self.credentials.find_credential(Provider.LOCAL, email=email)
        if credential is None or not await self.credentials.verify_password(
            credential.password_hash, password
        ):
            logger.warning("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError("Invalid credentials")

        user = await self.credentials.find_user_by_id(credential.user_id)
        if user is None or not user.is_active or not credential.is_active:
            logger.warning("login_failed", reason="account_inactive", user_id=str(credential.user_id))
            raise AccountInactiveError("Account is inactive")

        await self.credentials.upgrade_password_hash(credential, password)
        return await self._establish_session(user, credential.id, device)

    async def oauth_login(
        self,
        provider: Provider,
        profile: OAuthProfile,
        oauth_tokens: OAuthTokens,
        device: DeviceInfo,
    ) -> AuthResult:
        """
        Sign in with a profile already obtained from an OAuth provider.

        Process:
            1. Known (provider, provider_id): refresh the stored OAuth tokens
            2. Unknown, but a user owns the email: link a new credential
            3. Otherwise: create user + credential
        """
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"{provider.value} is not an OAuth provider")

        credential = await self.credentials.find_credential(provider, provider_id=profile.provider_id)
        if credential is not None:
            await self.credentials.update_oauth_tokens(credential.id, oauth_tokens)
            user = await self.credentials.find_user_by_id(credential.user_id)
        else:
            user = await self.credentials.find_user_by_email(profile.email)
            if user is not None:
                credential = await self.credentials.create_credential(
                    user.id, provider, profile.provider_id, profile.email, oauth_tokens=oauth_tokens
                )
            else:
                user, credential = await self.credentials.create_oauth_user(provider, profile, oauth_tokens)

        if user is None or not user.is_active or not credential.is_active:
            raise AccountInactiveError("Account is inactive")

        return await self._establish_session(user, credential.id, device)

    async def refresh(self, refresh_token: str, device_id: str) -> TokenPair:
        """
        Rotate a refresh token.

        Raises:
            InvalidTokenError: Token fails verification
            SessionNotFoundError: Token no longer held by an active session
            AccountInactiveError: User was deactivated
        """
        claims = await self.tokens.verify_refresh(refresh_token)
        user = await self.credentials.find_user_by_id(claims.user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if not user.is_active:
            raise AccountInactiveError("Account is inactive")

        return await self.tokens.rotate_refresh(
            refresh_token, device_id, onboarding_completed=user.onboarding_completed
        )

    async def authenticate_access_token(self, token: str) -> tuple[TokenClaims, User]:
        """
        Verify an access token and load its active user.

        Raises:
            InvalidTokenError: TOKEN_EXPIRED or INVALID_TOKEN
            UserNotFoundError: Subject no longer exists
            AccountInactiveError: Subject is deactivated
        """
        claims = await self.tokens.verify_access(token)
        user = await self.credentials.find_user_by_id(claims.user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if not user.is_active:
            raise AccountInactiveError("Account is inactive")
        return claims, user

    async def authenticate_connection(self, token: str) -> tuple[TokenClaims, User]:
        """
        Access-token check for realtime connections.

        Beyond the access token, the device session named in the token must
        still be active and belong to the same user, so a device that was
        logged out cannot reconnect with its remaining access token.

        Raises:
            SessionNotFoundError: No active session for the token's device
        """
        claims, user = await self.authenticate_access_token(token)
        session = await self.sessions.get_by_device(claims.device_id) if claims.device_id else None
        if session is None or not session.is_active or session.user_id != user.id:
            raise SessionNotFoundError("Session is no longer active")
        return claims, user

    async def record_activity(self, user_id: UUID, device_id: Optional[str]) -> None:
        """Bump last-active timestamps on the user and, if known, the device session."""
        await self.credentials.touch_last_active(user_id)
        if not device_id:
            return
        try:
            await self.sessions.touch(device_id)
        except SQLAlchemyError as exc:
            logger.warning("session_touch_failed", device_id=device_id, error=str(exc))

    # =========================================================================
    # Revocation
    # =========================================================================

    async def logout(self, user_id: UUID, device_id: str, refresh_token: Optional[str] = None) -> bool:
        """
        End the session of one device of the caller.

        With a refresh token, only the session still holding it is ended;
        without one, the device's session is ended if it belongs to the caller.

        Returns:
            False if there was no active session to end
        """
        session = await self.sessions.get_by_device(device_id)
        if session is None or session.user_id != user_id:
            return False

        if refresh_token:
            revoked = await self.tokens.revoke(refresh_token, device_id)
        else:
            revoked = await self.sessions.deactivate(device_id=device_id)

        await self.tracker.force_disconnect(str(user_id), REASON_LOGGED_OUT, device_id=device_id)
        return revoked

    async def logout_all(self, user_id: UUID, except_device_id: Optional[str] = None) -> int:
        count = await self.tokens.revoke_all(user_id, except_device_id)
        await self.tracker.force_disconnect(
            str(user_id), REASON_LOGGED_OUT_EVERYWHERE, except_device_id=except_device_id
        )
        return count

    async def list_sessions(self, user_id: UUID) -> list[UserSession]:
        return await self.sessions.find_active(user_id)

    async def revoke_session(self, user_id: UUID, session_id: UUID) -> bool:
        """
        Revoke one of the caller's sessions by id.

        Raises:
            ResourceNotFoundError: No such session for this user
        """
        session = await self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise ResourceNotFoundError("Session not found")

        revoked = await self.sessions.deactivate(session_id=session_id)
        await self.tracker.force_disconnect(
            str(user_id), REASON_SESSION_REVOKED, device_id=session.device_id
        )
        return revoked

    async def deactivate_account(self, user_id: UUID) -> None:
        await self.credentials.deactivate_user(user_id)
        await self.sessions.deactivate_all(user_id)
        await self.tracker.force_disconnect(str(user_id), REASON_ACCOUNT_DELETED)

    # =========================================================================
    # Password reset and email verification
    # =========================================================================

    async def request_password_reset(self, email: str) -> None:
        """
        Send a reset link if a local account exists for ``email``.

        Returns silently otherwise, so callers cannot enumerate accounts.

        Raises:
            EmailDeliveryError: The reset email could not be sent
        """
        user = await self.credentials.find_user_by_email(email)
        credential = await self.credentials.find_local_credential(user.id) if user else None
        if user is None or credential is None or not user.is_active:
            logger.info("password_reset_skipped")
            return

        token = await self.tokens.issue_password_reset_token(user.id, user.email)
        expires_at = datetime.utcnow() + self.tokens.password_reset_ttl
        await self.credentials.set_password_reset(credential.id, token, expires_at)
        await self.email_sender.send_password_reset(user.email, token)
        logger.info("password_reset_requested", user_id=str(user.id))

    async def reset_password(self, token: str, new_password: str) -> None:
        """
        Consume a reset token, set the password, and end every session.

        Raises:
            InvalidResetTokenError: Token invalid, expired or already used
        """
        try:
            claims = await self.tokens.verify_password_reset_token(token)
        except InvalidTokenError:
            raise InvalidResetTokenError("Invalid or expired reset token")

        if not await self.credentials.consume_password_reset(claims.user_id, token, new_password):
            raise InvalidResetTokenError("Invalid or expired reset token")

        await self.sessions.deactivate_all(claims.user_id)
        await self.tracker.force_disconnect(str(claims.user_id), REASON_PASSWORD_RESET)
        logger.info("password_reset_completed", user_id=claims.sub)

    async def verify_email(self, token: str) -> None:
        """
        Raises:
            InvalidTokenError: Token invalid or expired
            ResourceNotFoundError: User no longer exists
        """
        claims = await self.tokens.verify_email_verification_token(token)
        await self.credentials.mark_email_verified(claims.user_id)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _establish_session(self, user: User, credential_id: UUID, device: DeviceInfo) -> AuthResult:
        tokens = await self.tokens.issue_token_pair(
            user_id=user.id,
            email=user.email,
            device_id=device.device_id,
            onboarding_completed=user.onboarding_completed,
        )
        await self.sessions.upsert(user.id, device, tokens.refresh_token, tokens.refresh_expires_at)
        await self.credentials.record_login(credential_id)
        await self.credentials.touch_last_active(user.id)

        logger.info("user_authenticated", user_id=str(user.id), device_id=device.device_id)
        return AuthResult(user=user, tokens=tokens, device_id=device.device_id)
