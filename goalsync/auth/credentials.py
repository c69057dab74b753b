"""
GoalSync - Credential Store

Users and their linked credentials (local password or OAuth account).

Write paths normalize explicitly:
- emails are trimmed and lower-cased
- passwords are bcrypt-hashed off the event loop
- OAuth credentials are created verified
"""

import asyncio
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from goalsync.auth import password as passwords
from goalsync.auth.database import SessionFactory
from goalsync.auth.models import (
    User,
    Credential,
    Provider,
    normalize_email,
    is_verified_on_creation,
)
from goalsync.auth.sessions import hash_token
from goalsync.errors import DuplicateCredentialError, ResourceNotFoundError
from goalsync.logging import get_logger


logger = get_logger(__name__)


class OAuthProfile(BaseModel):
    """Profile returned by an OAuth provider after the consent exchange."""
    provider_id: str
    email: str
    name: str


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class CredentialStore:
    """
    Persistence for users and credentials.

    Blocking SQL and bcrypt both run on worker threads; the SQL through the
    session factory, bcrypt through ``asyncio.to_thread``.

    Args:
        session_factory: Creates database sessions
        work_factor: bcrypt cost for new hashes
    """

    def __init__(self, session_factory: SessionFactory, work_factor: int = passwords.BCRYPT_WORK_FACTOR):
        self._session_factory = session_factory
        self._work_factor = work_factor

    # =========================================================================
    # Users
    # =========================================================================

    async def find_user_by_id(self, user_id: UUID) -> Optional[User]:
        def work():
            with self._session_factory() as db:
                return db.get(User, user_id)

        return await self._session_factory.run(work)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return await self._first(select(User).where(User.email == normalize_email(email)))

    async def touch_last_active(self, user_id: UUID) -> None:
        """Best effort; a failure here must never fail the request."""
        try:
            await self._execute(
                update(User).where(User.id == user_id).values(last_active_at=datetime.utcnow())
            )
        except SQLAlchemyError as exc:
            logger.warning("touch_last_active_failed", user_id=str(user_id), error=str(exc))

    async def mark_email_verified(self, user_id: UUID) -> None:
        """Verify the user's address and their local credential, if any."""
        now = datetime.utcnow()

        def work() -> bool:
            with self._session_factory() as db:
                result = db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(is_email_verified=True, updated_at=now)
                )
                if result.rowcount == 0:
                    db.rollback()
                    return False
                db.execute(
                    update(Credential)
                    .where(Credential.user_id == user_id, Credential.provider == Provider.LOCAL)
                    .values(is_verified=True)
                )
                db.commit()
                return True

        if not await self._session_factory.run(work):
            raise ResourceNotFoundError("User not found")
        logger.info("email_verified", user_id=str(user_id))

    async def deactivate_user(self, user_id: UUID) -> bool:
        """
        Soft-delete: the row stays, the user can no longer authenticate.

        Returns:
            False if the user was absent or already inactive
        """
        now = datetime.utcnow()
        deactivated = await self._execute(
            update(User)
            .where(User.id == user_id, User.is_active == True)  # noqa: E712
            .values(is_active=False, deactivated_at=now, updated_at=now)
        ) == 1

        if deactivated:
            logger.info("user_deactivated", user_id=str(user_id))
        return deactivated

    # =========================================================================
    # Credentials
    # =========================================================================

    async def find_credential(
        self,
        provider: Provider,
        provider_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Credential]:
        """
        Look up a credential by (provider, provider_id) or (provider, email).

        Raises:
            ValueError: If neither provider_id nor email is given
        """
        if provider_id is None and email is None:
            raise ValueError("provider_id or email is required")

        statement = select(Credential).where(Credential.provider == provider)
        if provider_id is not None:
            statement = statement.where(Credential.provider_id == provider_id)
        if email is not None:
            statement = statement.where(Credential.email == normalize_email(email))
        return await self._first(statement)

    async def find_user_credential(self, user_id: UUID, provider: Provider) -> Optional[Credential]:
        return await self._first(
            select(Credential).where(Credential.user_id == user_id, Credential.provider == provider)
        )

    async def find_local_credential(self, user_id: UUID) -> Optional[Credential]:
        return await self.find_user_credential(user_id, Provider.LOCAL)

    async def create_credential(
        self,
        user_id: UUID,
        provider: Provider,
        provider_id: str,
        email: str,
        password: Optional[str] = None,
        oauth_tokens: Optional[OAuthTokens] = None,
    ) -> Credential:
        """
        Link a new credential to an existing user.

        Raises:
            DuplicateCredentialError: (provider, provider_id) already linked,
                or the user already has a credential for this provider
        """
        if await self.find_user_credential(user_id, provider) is not None:
            raise DuplicateCredentialError(f"User already has a {provider.value} credential")

        credential = await self._build_credential(
            user_id, provider, provider_id, email, password, oauth_tokens
        )

        def work() -> Credential:
            with self._session_factory() as db:
                db.add(credential)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise DuplicateCredentialError(f"{provider.value} account is already linked")
                db.refresh(credential)
                return credential

        credential = await self._session_factory.run(work)
        logger.info("credential_created", user_id=str(user_id), provider=provider.value)
        return credential

    async def verify_password(self, password_hash: Optional[str], plaintext: str) -> bool:
        """bcrypt check on a worker thread."""
        if not password_hash:
            return False
        return await asyncio.to_thread(passwords.verify_password, plaintext, password_hash)

    async def create_local_user(self, name: str, email: str, password: str) -> tuple[User, Credential]:
        """
        Create a user with a local password credential.

        Raises:
            DuplicateCredentialError: Email already registered
        """
        email = normalize_email(email)
        if await self.find_user_by_email(email) is not None:
            raise DuplicateCredentialError("Email already registered")

        user = User(email=email, name=name.strip())
        credential = await self._build_credential(user.id, Provider.LOCAL, email, email, password)
        return await self._insert_user(user, credential)

    async def create_oauth_user(
        self,
        provider: Provider,
        profile: OAuthProfile,
        oauth_tokens: OAuthTokens,
    ) -> tuple[User, Credential]:
        """Create a user whose first credential is an OAuth account."""
        email = normalize_email(profile.email)
        user = User(email=email, name=profile.name.strip(), is_email_verified=True)
        credential = await self._build_credential(
            user.id, provider, profile.provider_id, email, oauth_tokens=oauth_tokens
        )
        return await self._insert_user(user, credential)

    async def update_oauth_tokens(self, credential_id: UUID, oauth_tokens: OAuthTokens) -> None:
        await self._execute(
            update(Credential)
            .where(Credential.id == credential_id)
            .values(
                oauth_access_token=oauth_tokens.access_token,
                oauth_refresh_token=oauth_tokens.refresh_token,
                oauth_token_expires_at=oauth_tokens.expires_at,
            )
        )

    async def record_login(self, credential_id: UUID) -> None:
        await self._execute(
            update(Credential)
            .where(Credential.id == credential_id)
            .values(login_count=Credential.login_count + 1, last_used_at=datetime.utcnow())
        )

    # =========================================================================
    # Passwords
    # =========================================================================

    async def upgrade_password_hash(self, credential: Credential, plaintext: str) -> bool:
        """
        Re-hash a just-verified password if it was stored with a lower work
        factor than the current one.

        Returns:
            True if the stored hash was replaced
        """
        if not credential.password_hash:
            return False
        if not passwords.needs_rehash(credential.password_hash, self._work_factor):
            return False

        password_hash = await self._hash(plaintext)
        await self._execute(
            update(Credential)
            .where(Credential.id == credential.id)
            .values(password_hash=password_hash)
        )
        logger.info("password_hash_upgraded", credential_id=str(credential.id))
        return True

    async def set_password_reset(self, credential_id: UUID, token: str, expires_at: datetime) -> None:
        """Store the hash of a pending reset token; any earlier one is replaced."""
        await self._execute(
            update(Credential)
            .where(Credential.id == credential_id)
            .values(password_reset_token_hash=hash_token(token), password_reset_expires_at=expires_at)
        )

    async def consume_password_reset(self, user_id: UUID, token: str, new_password: str) -> bool:
        """
        Set a new password if ``token`` is the pending, unexpired reset token.

        The token is cleared in the same statement, so it works at most once.

        Returns:
            True if the password was changed
        """
        password_hash = await self._hash(new_password)
        return await self._execute(
            update(Credential)
            .where(
                Credential.user_id == user_id,
                Credential.provider == Provider.LOCAL,
                Credential.password_reset_token_hash == hash_token(token),
                Credential.password_reset_expires_at > datetime.utcnow(),
            )
            .values(
                password_hash=password_hash,
                password_reset_token_hash=None,
                password_reset_expires_at=None,
            )
        ) == 1

    # =========================================================================
    # Internals
    # =========================================================================

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(passwords.hash_password, password, self._work_factor)

    async def _first(self, statement):
        def work():
            with self._session_factory() as db:
                return db.exec(statement).first()

        return await self._session_factory.run(work)

    async def _execute(self, statement) -> int:
        def work() -> int:
            with self._session_factory() as db:
                result = db.execute(statement)
                db.commit()
                return result.rowcount

        return await self._session_factory.run(work)

    async def _build_credential(
        self,
        user_id: UUID,
        provider: Provider,
        provider_id: str,
        email: str,
        password: Optional[str] = None,
        oauth_tokens: Optional[OAuthTokens] = None,
    ) -> Credential:
        credential = Credential(
            user_id=user_id,
            provider=provider,
            provider_id=provider_id,
            email=normalize_email(email),
            is_verified=is_verified_on_creation(provider),
        )
        if password is not None:
            credential.password_hash = await self._hash(password)
        if oauth_tokens is not None:
            credential.oauth_access_token = oauth_tokens.access_token
            credential.oauth_refresh_token = oauth_tokens.refresh_token
            credential.oauth_token_expires_at = oauth_tokens.expires_at
        return credential

    async def _insert_user(self, user: User, credential: Credential) -> tuple[User, Credential]:
        def work() -> tuple[User, Credential]:
            with self._session_factory() as db:
                try:
                    db.add(user)
                    db.flush()
                    db.add(credential)
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise DuplicateCredentialError("Email already registered")
                db.refresh(user)
                db.refresh(credential)
                return user, credential

        user, credential = await self._session_factory.run(work)
        logger.info("user_created", user_id=str(user.id), provider=credential.provider.value)
        return user, credential
