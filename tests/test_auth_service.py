"""
GoalSync - Auth Service Tests

Flows exercised below the HTTP layer: OAuth sign-in, email delivery
failures and session ownership checks.

Run with: pytest tests/test_auth_service.py -v
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from sqlmodel import select

from goalsync.auth.credentials import CredentialStore, OAuthProfile, OAuthTokens
from goalsync.auth.models import Provider, User, UserSession
from goalsync.auth.service import AuthService
from goalsync.errors import (
    DuplicateCredentialError,
    EmailDeliveryError,
    ResourceNotFoundError,
    SessionNotFoundError,
)
from tests.conftest import TEST_EMAIL, TEST_PASSWORD, FailingEmailSender, FakeConnection, make_device


@pytest.fixture
def failing_auth_service(credential_store, registry, token_service, tracker) -> AuthService:
    return AuthService(
        credentials=credential_store,
        sessions=registry,
        tokens=token_service,
        tracker=tracker,
        email_sender=FailingEmailSender(),
    )


# =============================================================================
# OAUTH
# =============================================================================

class TestOAuthLogin:

    @pytest.mark.asyncio
    async def test_first_login_creates_verified_user(self, auth_service, credential_store):
        profile = OAuthProfile(provider_id="g-123", email="Oauth@X.com", name="OAuth User")

        result = await auth_service.oauth_login(
            Provider.GOOGLE, profile, OAuthTokens(access_token="ya29"), make_device("D1")
        )

        assert result.user.email == "oauth@x.com"
        assert result.user.is_email_verified is True
        credential = await credential_store.find_credential(Provider.GOOGLE, provider_id="g-123")
        assert credential.oauth_access_token == "ya29"
        assert credential.password_hash is None

    @pytest.mark.asyncio
    async def test_repeat_login_refreshes_provider_tokens(self, auth_service, credential_store):
        profile = OAuthProfile(provider_id="g-123", email="oauth@x.com", name="OAuth User")
        first = await auth_service.oauth_login(
            Provider.GOOGLE, profile, OAuthTokens(access_token="old"), make_device("D1")
        )

        second = await auth_service.oauth_login(
            Provider.GOOGLE, profile, OAuthTokens(access_token="new", refresh_token="r1"), make_device("D2")
        )

        assert second.user.id == first.user.id
        credential = await credential_store.find_credential(Provider.GOOGLE, provider_id="g-123")
        assert credential.oauth_access_token == "new"
        assert credential.oauth_refresh_token == "r1"
        assert credential.login_count == 2

    @pytest.mark.asyncio
    async def test_links_to_existing_local_user(self, auth_service, credential_store):
        local = await auth_service.signup("Test User", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        profile = OAuthProfile(provider_id="ms-1", email=TEST_EMAIL, name="Test User")

        result = await auth_service.oauth_login(
            Provider.MICROSOFT, profile, OAuthTokens(access_token="token"), make_device("D2")
        )

        assert result.user.id == local.user.id
        assert await credential_store.find_credential(Provider.LOCAL, email=TEST_EMAIL) is not None

    @pytest.mark.asyncio
    async def test_local_provider_is_rejected(self, auth_service):
        profile = OAuthProfile(provider_id="x", email=TEST_EMAIL, name="Test User")

        with pytest.raises(ValueError):
            await auth_service.oauth_login(Provider.LOCAL, profile, OAuthTokens(access_token="t"), make_device())


# =============================================================================
# EMAIL DELIVERY
# =============================================================================

class TestEmailDelivery:

    @pytest.mark.asyncio
    async def test_signup_survives_verification_mail_failure(self, failing_auth_service):
        result = await failing_auth_service.signup("Test User", TEST_EMAIL, TEST_PASSWORD, make_device())

        assert result.tokens.access_token
        assert result.user.is_email_verified is False

    @pytest.mark.asyncio
    async def test_reset_mail_failure_is_reported(self, failing_auth_service):
        await failing_auth_service.signup("Test User", TEST_EMAIL, TEST_PASSWORD, make_device())

        with pytest.raises(EmailDeliveryError):
            await failing_auth_service.request_password_reset(TEST_EMAIL)

    @pytest.mark.asyncio
    async def test_reset_for_unknown_email_sends_nothing(self, auth_service, email_sender):
        await auth_service.request_password_reset("nobody@x.com")

        assert email_sender.reset_tokens == {}

    @pytest.mark.asyncio
    async def test_oauth_only_user_gets_no_reset_mail(self, auth_service, email_sender):
        profile = OAuthProfile(provider_id="g-1", email=TEST_EMAIL, name="OAuth User")
        await auth_service.oauth_login(Provider.GOOGLE, profile, OAuthTokens(access_token="t"), make_device())

        await auth_service.request_password_reset(TEST_EMAIL)

        assert email_sender.reset_tokens == {}


# =============================================================================
# SESSION OWNERSHIP
# =============================================================================

class TestSessionOwnership:

    @pytest.mark.asyncio
    async def test_logout_of_foreign_device_is_refused(self, auth_service, registry):
        await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))

        assert await auth_service.logout(uuid4(), "D1") is False
        assert (await registry.get_by_device("D1")).is_active is True

    @pytest.mark.asyncio
    async def test_revoke_foreign_session_is_not_found(self, auth_service):
        owner = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        sessions = await auth_service.list_sessions(owner.user.id)

        with pytest.raises(ResourceNotFoundError):
            await auth_service.revoke_session(uuid4(), sessions[0].id)

    @pytest.mark.asyncio
    async def test_revoke_session_disconnects_its_device(self, auth_service, tracker):
        owner = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        await auth_service.login(TEST_EMAIL, TEST_PASSWORD, make_device("D2"))
        d1 = FakeConnection(str(owner.user.id), device_id="D1")
        d2 = FakeConnection(str(owner.user.id), device_id="D2")
        tracker.on_connect(d1)
        tracker.on_connect(d2)
        d1_session = next(s for s in await auth_service.list_sessions(owner.user.id) if s.device_id == "D1")

        assert await auth_service.revoke_session(owner.user.id, d1_session.id) is True

        assert d1.closed
        assert d1.sent[0]["data"]["reason"] == "Session revoked"
        assert not d2.closed


# =============================================================================
# CREDENTIAL LINKING
# =============================================================================

class TestCredentialLinking:

    @pytest.mark.asyncio
    async def test_second_account_of_same_provider_is_refused(self, auth_service, credential_store):
        first = OAuthProfile(provider_id="g-1", email=TEST_EMAIL, name="OAuth User")
        second = OAuthProfile(provider_id="g-2", email=TEST_EMAIL, name="OAuth User")
        result = await auth_service.oauth_login(Provider.GOOGLE, first, OAuthTokens(access_token="t1"), make_device("D1"))

        with pytest.raises(DuplicateCredentialError):
            await auth_service.oauth_login(Provider.GOOGLE, second, OAuthTokens(access_token="t2"), make_device("D2"))

        assert await credential_store.find_credential(Provider.GOOGLE, provider_id="g-2") is None
        google = await credential_store.find_user_credential(result.user.id, Provider.GOOGLE)
        assert google.provider_id == "g-1"

    @pytest.mark.asyncio
    async def test_create_credential_enforces_one_per_provider(self, credential_store):
        user, _ = await credential_store.create_local_user("Ann", TEST_EMAIL, TEST_PASSWORD)
        await credential_store.create_credential(user.id, Provider.MICROSOFT, "ms-1", TEST_EMAIL)

        with pytest.raises(DuplicateCredentialError):
            await credential_store.create_credential(user.id, Provider.MICROSOFT, "ms-2", TEST_EMAIL)
        with pytest.raises(DuplicateCredentialError):
            await credential_store.create_credential(user.id, Provider.LOCAL, "other@x.com", "other@x.com", "Passw0rd!")


# =============================================================================
# REALTIME HANDSHAKE
# =============================================================================

class TestConnectionAuthentication:

    @pytest.mark.asyncio
    async def test_active_device_session_is_accepted(self, auth_service):
        result = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))

        claims, user = await auth_service.authenticate_connection(result.tokens.access_token)

        assert user.id == result.user.id
        assert claims.device_id == "D1"

    @pytest.mark.asyncio
    async def test_logged_out_device_is_refused(self, auth_service):
        result = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        await auth_service.logout(result.user.id, "D1")

        with pytest.raises(SessionNotFoundError):
            await auth_service.authenticate_connection(result.tokens.access_token)

    @pytest.mark.asyncio
    async def test_device_taken_over_by_another_user_is_refused(self, auth_service):
        first = await auth_service.signup("First", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        await auth_service.signup("Second", "b@x.com", TEST_PASSWORD, make_device("D1"))

        with pytest.raises(SessionNotFoundError):
            await auth_service.authenticate_connection(first.tokens.access_token)

    @pytest.mark.asyncio
    async def test_token_without_device_is_refused(self, auth_service, token_service):
        result = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        pair = await token_service.issue_token_pair(user_id=result.user.id, email=TEST_EMAIL)

        with pytest.raises(SessionNotFoundError):
            await auth_service.authenticate_connection(pair.access_token)


# =============================================================================
# ACTIVITY AND HASH UPGRADES
# =============================================================================

class TestActivity:

    @pytest.mark.asyncio
    async def test_record_activity_bumps_user_and_session(self, auth_service, registry, credential_store, session_factory):
        result = await auth_service.signup("Owner", TEST_EMAIL, TEST_PASSWORD, make_device("D1"))
        stale = datetime.utcnow() - timedelta(days=1)
        with session_factory() as db:
            session = db.exec(select(UserSession).where(UserSession.device_id == "D1")).one()
            session.last_active_at = stale
            user = db.get(User, result.user.id)
            user.last_active_at = stale
            db.add(session)
            db.add(user)
            db.commit()

        await auth_service.record_activity(result.user.id, "D1")

        assert (await registry.get_by_device("D1")).last_active_at > stale
        assert (await credential_store.find_user_by_id(result.user.id)).last_active_at > stale

    @pytest.mark.asyncio
    async def test_login_upgrades_weak_hash(self, credential_store, registry, token_service, tracker, email_sender, session_factory):
        await credential_store.create_local_user("Owner", TEST_EMAIL, TEST_PASSWORD)
        stronger = AuthService(
            credentials=CredentialStore(session_factory, work_factor=5),
            sessions=registry,
            tokens=token_service,
            tracker=tracker,
            email_sender=email_sender,
        )

        await stronger.login(TEST_EMAIL, TEST_PASSWORD, make_device("D1"))

        credential = await credential_store.find_credential(Provider.LOCAL, email=TEST_EMAIL)
        assert credential.password_hash.startswith("$2b$05$")
