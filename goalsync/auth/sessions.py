"""
GoalSync - Session Registry

Durable per-device sessions: the source of truth for which devices may
currently refresh which user's credentials.

Security:
- One row per device_id; logging in again from a device revives its row
- Only the SHA-256 of the current refresh token is stored
- Rotation is a conditional UPDATE keyed on the previous token hash, so two
  racing refreshes with the same token cannot both succeed
- Deactivation nulls the stored hash; the old token can never be replayed
"""

import asyncio
import hashlib
import secrets
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from goalsync.auth.database import SessionFactory
from goalsync.auth.models import UserSession, DeviceType, default_refresh_expiry
from goalsync.logging import get_logger


logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a refresh token (the only form persisted)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_device_id() -> str:
    """Server-side fallback for clients that did not send a device id."""
    return secrets.token_hex(16)


class DeviceInfo(BaseModel):
    """Client device description captured at authentication time."""
    device_id: str = Field(..., min_length=1, max_length=128)
    device_name: str = Field(default="Unknown device", max_length=100)
    device_type: DeviceType = DeviceType.UNKNOWN
    browser: Optional[str] = Field(default=None, max_length=50)
    os: Optional[str] = Field(default=None, max_length=50)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)


class SessionRegistry:
    """
    Per-device session store.

    Every method is a short awaited unit of work: the blocking SQL runs on
    the session factory's worker thread inside its own database session.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def upsert(
        self,
        user_id: UUID,
        device: DeviceInfo,
        refresh_token: str,
        expires_at: Optional[datetime] = None,
    ) -> UserSession:
        """
        Create or overwrite the session for ``device.device_id``.

        Re-authenticating on a logged-out device reactivates its existing row
        and rebinds it to ``user_id``; it never creates a duplicate.
        """
        now = datetime.utcnow()
        expires_at = expires_at or default_refresh_expiry(now)

        def work() -> tuple[UserSession, bool]:
            with self._session_factory() as db:
                session = db.exec(
                    select(UserSession).where(UserSession.device_id == device.device_id)
                ).first()

                if session is not None:
                    _overwrite(session, user_id, device, refresh_token, expires_at, now)
                    db.add(session)
                    db.commit()
                    db.refresh(session)
                    return session, False

                session = UserSession(
                    user_id=user_id,
                    device_id=device.device_id,
                    refresh_token_hash=hash_token(refresh_token),
                    refresh_token_expires_at=expires_at,
                    is_active=True,
                    login_at=now,
                    last_active_at=now,
                    created_at=now,
                    updated_at=now,
                    **_device_metadata(device),
                )
                db.add(session)
                try:
                    db.commit()
                except IntegrityError:
                    # Another request inserted this device first; overwrite it.
                    db.rollback()
                    session = db.exec(
                        select(UserSession).where(UserSession.device_id == device.device_id)
                    ).one()
                    _overwrite(session, user_id, device, refresh_token, expires_at, now)
                    db.add(session)
                    db.commit()
                db.refresh(session)
                return session, True

        session, created = await self._session_factory.run(work)
        logger.info(
            "session_upserted",
            user_id=str(user_id),
            device_id=device.device_id,
            created=created,
        )
        return session

    async def get(self, session_id: UUID) -> Optional[UserSession]:
        def work():
            with self._session_factory() as db:
                return db.get(UserSession, session_id)

        return await self._session_factory.run(work)

    async def get_by_device(self, device_id: str) -> Optional[UserSession]:
        return await self._first(select(UserSession).where(UserSession.device_id == device_id))

    async def find_active(self, user_id: UUID) -> list[UserSession]:
        """
        All active, unexpired sessions of a user, most recently active first.

        Used to render the "your devices" list.
        """
        statement = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active == True,  # noqa: E712
                UserSession.refresh_token_expires_at > datetime.utcnow(),
            )
            .order_by(UserSession.last_active_at.desc())
        )

        def work():
            with self._session_factory() as db:
                return list(db.exec(statement).all())

        return await self._session_factory.run(work)

    async def find_for_refresh(self, device_id: str, refresh_token: str) -> Optional[UserSession]:
        """
        Exact match on device, token, active flag and expiry.

        Any mismatch returns None; callers cannot tell which field failed.
        """
        return await self._first(
            select(UserSession).where(
                UserSession.device_id == device_id,
                UserSession.refresh_token_hash == hash_token(refresh_token),
                UserSession.is_active == True,  # noqa: E712
                UserSession.refresh_token_expires_at > datetime.utcnow(),
            )
        )

    async def replace_refresh_token(
        self,
        device_id: str,
        old_refresh_token: str,
        new_refresh_token: str,
        expires_at: datetime,
    ) -> bool:
        """
        Swap the stored token only if it still equals ``old_refresh_token``.

        Returns:
            True if this call won the swap, False if the token was already
            rotated, revoked or expired.
        """
        now = datetime.utcnow()
        statement = (
            update(UserSession)
            .where(
                UserSession.device_id == device_id,
                UserSession.refresh_token_hash == hash_token(old_refresh_token),
                UserSession.is_active == True,  # noqa: E712
                UserSession.refresh_token_expires_at > now,
            )
            .values(
                refresh_token_hash=hash_token(new_refresh_token),
                refresh_token_expires_at=expires_at,
                last_active_at=now,
                updated_at=now,
            )
        )
        replaced = await self._execute(statement) == 1

        if replaced:
            logger.info("session_rotated", device_id=device_id)
        else:
            logger.warning("session_rotation_rejected", device_id=device_id)
        return replaced

    async def deactivate(
        self,
        session_id: Optional[UUID] = None,
        device_id: Optional[str] = None,
    ) -> bool:
        """
        Mark one session inactive, stamp the logout time, null the token.

        Returns:
            True if an active session was deactivated; False if there was
            nothing to do (already inactive or absent).
        """
        if session_id is None and device_id is None:
            raise ValueError("session_id or device_id is required")

        conditions = [UserSession.is_active == True]  # noqa: E712
        if session_id is not None:
            conditions.append(UserSession.id == session_id)
        if device_id is not None:
            conditions.append(UserSession.device_id == device_id)

        return await self._deactivate_where(*conditions) > 0

    async def deactivate_by_token(self, device_id: str, refresh_token: str) -> bool:
        """Deactivate the session only if it still holds ``refresh_token``."""
        return await self._deactivate_where(
            UserSession.device_id == device_id,
            UserSession.refresh_token_hash == hash_token(refresh_token),
            UserSession.is_active == True,  # noqa: E712
        ) > 0

    async def deactivate_all(self, user_id: UUID, except_device_id: Optional[str] = None) -> int:
        """
        Deactivate every active session of a user.

        Use cases:
            - Logout everywhere
            - Password reset
            - Account deactivation
        """
        conditions = [
            UserSession.user_id == user_id,
            UserSession.is_active == True,  # noqa: E712
        ]
        if except_device_id:
            conditions.append(UserSession.device_id != except_device_id)
        return await self._deactivate_where(*conditions)

    async def touch(self, device_id: str) -> None:
        """Record activity on an active device session."""
        await self._execute(
            update(UserSession)
            .where(UserSession.device_id == device_id, UserSession.is_active == True)  # noqa: E712
            .values(last_active_at=datetime.utcnow())
        )

    async def sweep_expired(self) -> int:
        """
        Deactivate every active session whose refresh token has expired.

        Maintenance only: skipping a run delays cleanup but never corrupts
        state, because find_for_refresh already ignores expired rows.
        """
        count = await self._deactivate_where(
            UserSession.is_active == True,  # noqa: E712
            UserSession.refresh_token_expires_at < datetime.utcnow(),
        )
        if count:
            logger.info("expired_sessions_swept", count=count)
        return count

    async def _deactivate_where(self, *conditions) -> int:
        now = datetime.utcnow()
        return await self._execute(
            update(UserSession)
            .where(*conditions)
            .values(
                is_active=False,
                logout_at=now,
                refresh_token_hash=None,
                updated_at=now,
            )
        )

    async def _first(self, statement) -> Optional[UserSession]:
        def work():
            with self._session_factory() as db:
                return db.exec(statement).first()

        return await self._session_factory.run(work)

    async def _execute(self, statement) -> int:
        """Run an UPDATE in its own transaction and return the affected row count."""
        def work() -> int:
            with self._session_factory() as db:
                result = db.execute(statement)
                db.commit()
                return result.rowcount

        return await self._session_factory.run(work)


class SessionSweeper:
    """
    Background task that runs ``SessionRegistry.sweep_expired`` on a fixed
    interval for the lifetime of the application.
    """

    def __init__(self, registry: SessionRegistry, interval_seconds: float = 3600):
        self._registry = registry
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> int:
        try:
            return await self._registry.sweep_expired()
        except Exception as exc:
            # A failed sweep only delays cleanup; the next tick retries.
            logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))
            return 0

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)


def _device_metadata(device: DeviceInfo) -> dict:
    return {
        "device_name": device.device_name,
        "device_type": device.device_type,
        "browser": device.browser,
        "os": device.os,
        "ip_address": device.ip_address,
        "user_agent": device.user_agent,
    }


def _overwrite(
    session: UserSession,
    user_id: UUID,
    device: DeviceInfo,
    refresh_token: str,
    expires_at: datetime,
    now: datetime,
) -> None:
    session.user_id = user_id
    session.refresh_token_hash = hash_token(refresh_token)
    session.refresh_token_expires_at = expires_at
    session.is_active = True
    session.login_at = now
    session.last_active_at = now
    session.logout_at = None
    session.updated_at = now
    for key, value in _device_metadata(device).items():
        setattr(session, key, value)
