"""
GoalSync - Test Configuration

Pytest fixtures for session, token and realtime testing.
Provides an in-memory database, service instances, a configured app and
fake realtime connections.
"""

from typing import Generator, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from goalsync.app import create_app
from goalsync.auth.credentials import CredentialStore
from goalsync.auth.database import get_engine, get_session_factory, init_db
from goalsync.auth.service import AuthService
from goalsync.auth.sessions import DeviceInfo, SessionRegistry
from goalsync.auth.tokens import TokenService
from goalsync.config import Settings
from goalsync.errors import EmailDeliveryError
from goalsync.realtime.tracker import ConnectionTracker


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite:///:memory:"

TEST_EMAIL = "a@x.com"
TEST_PASSWORD = "Passw0rd!"


# =============================================================================
# Fakes
# =============================================================================

class RecordingEmailSender:
    """Keeps the last token sent to each address."""

    def __init__(self):
        self.reset_tokens: dict[str, str] = {}
        self.verification_tokens: dict[str, str] = {}

    async def send_password_reset(self, email: str, token: str) -> None:
        self.reset_tokens[email] = token

    async def send_email_verification(self, email: str, token: str) -> None:
        self.verification_tokens[email] = token


class FailingEmailSender:
    async def send_password_reset(self, email: str, token: str) -> None:
        raise EmailDeliveryError("SMTP unavailable")

    async def send_email_verification(self, email: str, token: str) -> None:
        raise EmailDeliveryError("SMTP unavailable")


class FakeConnection:
    """In-memory transport handle for tracker tests."""

    def __init__(self, user_id: str, device_id: Optional[str] = None, fail_send: bool = False):
        self.connection_id = uuid4().hex
        self.user_id = user_id
        self.device_id = device_id
        self.fail_send = fail_send
        self.sent: list[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    async def send_json(self, message: dict) -> None:
        if self.fail_send:
            raise ConnectionError("transport gone")
        self.sent.append(message)

    async def close(self, code: int = 1008, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def events(self) -> list[str]:
        return [message["event"] for message in self.sent]


# =============================================================================
# Configuration and database
# =============================================================================

@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        JWT_SECRET="test-access-secret",
        JWT_REFRESH_SECRET="test-refresh-secret",
        DATABASE_URL=TEST_DATABASE_URL,
        BCRYPT_WORK_FACTOR=4,
        LOG_LEVEL="WARNING",
        LOG_JSON=False,
    )


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    factory = get_session_factory(test_engine)
    yield factory
    factory.close()


# =============================================================================
# Services
# =============================================================================

@pytest.fixture(scope="function")
def registry(session_factory) -> SessionRegistry:
    return SessionRegistry(session_factory)


@pytest.fixture(scope="function")
def token_service(test_settings, registry) -> TokenService:
    return TokenService.from_settings(test_settings, registry)


@pytest.fixture(scope="function")
def credential_store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory, work_factor=4)


@pytest.fixture(scope="function")
def tracker() -> ConnectionTracker:
    return ConnectionTracker()


@pytest.fixture(scope="function")
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture(scope="function")
def auth_service(credential_store, registry, token_service, tracker, email_sender) -> AuthService:
    return AuthService(
        credentials=credential_store,
        sessions=registry,
        tokens=token_service,
        tracker=tracker,
        email_sender=email_sender,
    )


def make_device(device_id: str = "D1", **kwargs) -> DeviceInfo:
    return DeviceInfo(device_id=device_id, device_name=kwargs.pop("device_name", f"Device {device_id}"), **kwargs)


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture(scope="function")
def app(test_settings, test_engine, email_sender):
    return create_app(settings=test_settings, engine=test_engine, email_sender=email_sender)


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client; entering it runs the application lifespan."""
    with TestClient(app) as c:
        yield c


def signup_user(
    client: TestClient,
    email: str = TEST_EMAIL,
    password: str = TEST_PASSWORD,
    device_id: Optional[str] = "D1",
    name: str = "Test User",
) -> dict:
    """Sign up and return the response body."""
    body = {"name": name, "email": email, "password": password}
    if device_id is not None:
        body["device_id"] = device_id
    response = client.post("/api/auth/signup", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def login_user(
    client: TestClient,
    email: str = TEST_EMAIL,
    password: str = TEST_PASSWORD,
    device_id: Optional[str] = "D1",
) -> dict:
    """Log in and return the response body."""
    body = {"email": email, "password": password}
    if device_id is not None:
        body["device_id"] = device_id
    response = client.post("/api/auth/login", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def auth_headers(access_token: str) -> dict:
    """Create authorization headers."""
    return {"Authorization": f"Bearer {access_token}"}
