"""
GoalSync - Token Service Tests

Covers issuance, verification failure reasons, rotation and revocation.

Run with: pytest tests/test_tokens.py -v
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from jose import jwt, JWTError

from goalsync.auth.tokens import TokenService, TokenType
from goalsync.errors import (
    ConfigurationError,
    InvalidTokenError,
    SessionNotFoundError,
    TokenErrorReason,
)
from tests.conftest import make_device


def _service(test_settings, registry=None, **overrides) -> TokenService:
    service = TokenService.from_settings(test_settings, registry)
    for name, value in overrides.items():
        setattr(service, name, value)
    return service


# =============================================================================
# ISSUANCE AND VERIFICATION
# =============================================================================

class TestIssueAndVerify:

    @pytest.mark.asyncio
    async def test_access_token_round_trip(self, token_service):
        user_id = uuid4()
        pair = await token_service.issue_token_pair(
            user_id=user_id, email="a@x.com", device_id="D1", onboarding_completed=True
        )

        claims = await token_service.verify_access(pair.access_token)

        assert claims.type == TokenType.ACCESS
        assert claims.user_id == user_id
        assert claims.email == "a@x.com"
        assert claims.device_id == "D1"
        assert claims.onboarding_completed is True
        assert claims.iss == "goalsync-api"
        assert claims.aud == "goalsync-frontend"

    @pytest.mark.asyncio
    async def test_refresh_token_carries_random_jti(self, token_service):
        user_id = uuid4()
        first = await token_service.issue_token_pair(user_id=user_id, email="a@x.com", device_id="D1")
        second = await token_service.issue_token_pair(user_id=user_id, email="a@x.com", device_id="D1")

        claims = await token_service.verify_refresh(first.refresh_token)

        assert claims.type == TokenType.REFRESH
        assert len(claims.jti) == 32
        assert first.refresh_token != second.refresh_token

    @pytest.mark.asyncio
    async def test_pair_expiry_instants(self, token_service):
        pair = await token_service.issue_token_pair(user_id=uuid4(), email="a@x.com")

        assert pair.refresh_expires_at - pair.access_expires_at > timedelta(days=29)
        assert pair.token_type == "bearer"

    @pytest.mark.asyncio
    async def test_access_and_refresh_use_distinct_secrets(self, token_service, test_settings):
        pair = await token_service.issue_token_pair(user_id=uuid4(), email="a@x.com")

        jwt.decode(
            pair.access_token,
            test_settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=test_settings.JWT_AUDIENCE,
        )
        with pytest.raises(JWTError):
            jwt.decode(
                pair.refresh_token,
                test_settings.JWT_SECRET,
                algorithms=["HS256"],
                audience=test_settings.JWT_AUDIENCE,
            )

    @pytest.mark.asyncio
    async def test_missing_secret_is_configuration_error(self):
        service = TokenService(access_secret="", refresh_secret="refresh")

        with pytest.raises(ConfigurationError):
            await service.issue_token_pair(user_id=uuid4(), email="a@x.com")
        with pytest.raises(ConfigurationError):
            service.check_configuration()


class TestVerificationFailures:
    """Every rejection carries a reason; only expiry asks the client to refresh."""

    @pytest.mark.asyncio
    async def test_expired_access_token(self, test_settings, token_service):
        expired_issuer = _service(test_settings, access_ttl=timedelta(minutes=-1))
        pair = await expired_issuer.issue_token_pair(user_id=uuid4(), email="a@x.com")

        with pytest.raises(InvalidTokenError) as exc_info:
            await token_service.verify_access(pair.access_token)

        assert exc_info.value.reason == TokenErrorReason.EXPIRED
        assert exc_info.value.is_expired
        assert exc_info.value.error_code == "TOKEN_EXPIRED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    async def test_malformed_token(self, token_service, token):
        with pytest.raises(InvalidTokenError) as exc_info:
            await token_service.verify_access(token)

        assert exc_info.value.reason == TokenErrorReason.MALFORMED
        assert exc_info.value.error_code == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_foreign_signature(self, token_service):
        forger = TokenService(access_secret="other-secret", refresh_secret="other-refresh")
        pair = await forger.issue_token_pair(user_id=uuid4(), email="a@x.com")

        with pytest.raises(InvalidTokenError) as exc_info:
            await token_service.verify_access(pair.access_token)

        assert exc_info.value.reason == TokenErrorReason.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_wrong_audience(self, test_settings, token_service):
        other_audience = TokenService(
            access_secret=test_settings.JWT_SECRET,
            refresh_secret=test_settings.JWT_REFRESH_SECRET,
            audience="someone-else",
        )
        pair = await other_audience.issue_token_pair(user_id=uuid4(), email="a@x.com")

        with pytest.raises(InvalidTokenError) as exc_info:
            await token_service.verify_access(pair.access_token)

        assert exc_info.value.reason == TokenErrorReason.INVALID_CLAIMS

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, token_service):
        pair = await token_service.issue_token_pair(user_id=uuid4(), email="a@x.com")

        with pytest.raises(InvalidTokenError):
            await token_service.verify_access(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_password_reset_token_is_not_an_access_token(self, token_service):
        reset_token = await token_service.issue_password_reset_token(uuid4(), "a@x.com")

        with pytest.raises(InvalidTokenError) as exc_info:
            await token_service.verify_access(reset_token)

        assert exc_info.value.reason == TokenErrorReason.WRONG_TYPE

    @pytest.mark.asyncio
    async def test_single_purpose_tokens_verify_for_their_purpose(self, token_service):
        user_id = uuid4()
        reset_token = await token_service.issue_password_reset_token(user_id, "a@x.com")
        verification_token = await token_service.issue_email_verification_token(user_id, "a@x.com")

        assert (await token_service.verify_password_reset_token(reset_token)).user_id == user_id
        assert (await token_service.verify_email_verification_token(verification_token)).user_id == user_id

        with pytest.raises(InvalidTokenError):
            await token_service.verify_password_reset_token(verification_token)


# =============================================================================
# ROTATION AND REVOCATION
# =============================================================================

class TestRotation:

    async def _signed_in(self, token_service, registry, device_id="D1", user_id=None):
        user_id = user_id or uuid4()
        pair = await token_service.issue_token_pair(user_id=user_id, email="a@x.com", device_id=device_id)
        await registry.upsert(user_id, make_device(device_id), pair.refresh_token, pair.refresh_expires_at)
        return user_id, pair

    @pytest.mark.asyncio
    async def test_rotate_returns_new_pair(self, token_service, registry):
        _, pair = await self._signed_in(token_service, registry)

        rotated = await token_service.rotate_refresh(pair.refresh_token, "D1")

        assert rotated.refresh_token != pair.refresh_token
        assert await registry.find_for_refresh("D1", rotated.refresh_token) is not None

    @pytest.mark.asyncio
    async def test_rotating_twice_fails(self, token_service, registry):
        _, pair = await self._signed_in(token_service, registry)
        await token_service.rotate_refresh(pair.refresh_token, "D1")

        with pytest.raises(SessionNotFoundError):
            await token_service.rotate_refresh(pair.refresh_token, "D1")

    @pytest.mark.asyncio
    async def test_rotate_on_other_device_fails(self, token_service, registry):
        _, pair = await self._signed_in(token_service, registry)

        with pytest.raises(SessionNotFoundError):
            await token_service.rotate_refresh(pair.refresh_token, "D2")

    @pytest.mark.asyncio
    async def test_concurrent_rotation_has_one_winner(self, token_service, registry):
        _, pair = await self._signed_in(token_service, registry)

        results = await asyncio.gather(
            token_service.rotate_refresh(pair.refresh_token, "D1"),
            token_service.rotate_refresh(pair.refresh_token, "D1"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], SessionNotFoundError)

    @pytest.mark.asyncio
    async def test_revoke_then_rotate_fails(self, token_service, registry):
        _, pair = await self._signed_in(token_service, registry)

        assert await token_service.revoke(pair.refresh_token, "D1") is True
        assert await token_service.revoke(pair.refresh_token, "D1") is False

        with pytest.raises(SessionNotFoundError):
            await token_service.rotate_refresh(pair.refresh_token, "D1")

    @pytest.mark.asyncio
    async def test_revoke_unknown_is_noop(self, token_service):
        assert await token_service.revoke("unknown-token", "nowhere") is False

    @pytest.mark.asyncio
    async def test_revoke_all_kills_every_device(self, token_service, registry):
        user_id, pair1 = await self._signed_in(token_service, registry, "D1")
        _, pair2 = await self._signed_in(token_service, registry, "D2", user_id=user_id)

        assert await token_service.revoke_all(user_id) == 2

        for device_id, pair in (("D1", pair1), ("D2", pair2)):
            with pytest.raises(SessionNotFoundError):
                await token_service.rotate_refresh(pair.refresh_token, device_id)

    @pytest.mark.asyncio
    async def test_revoke_all_except_current_device(self, token_service, registry):
        user_id, pair1 = await self._signed_in(token_service, registry, "D1")
        _, pair2 = await self._signed_in(token_service, registry, "D2", user_id=user_id)

        assert await token_service.revoke_all(user_id, except_device_id="D1") == 1

        await token_service.rotate_refresh(pair1.refresh_token, "D1")
        with pytest.raises(SessionNotFoundError):
            await token_service.rotate_refresh(pair2.refresh_token, "D2")
