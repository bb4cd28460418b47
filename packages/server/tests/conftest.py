"""
Shared fixtures: a throwaway SQLite database, a controllable clock, and a
notifier that records messages instead of sending them.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import app.models  # noqa: F401
from app.core.auth import TokenIssuer
from app.core.errors import DependencyError
from app.services.auth import AuthService
from app.services.credential_store import CredentialStore
from app.services.oauth import GoogleOAuthProvider
from app.services.otp import OTPManager

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.otps: list[tuple[str, str]] = []
        self.welcomes: list[str] = []
        self.fail_otp = False
        self.fail_welcome = False

    async def send_otp(self, email, code, name=None):
        if self.fail_otp:
            raise DependencyError("NotificationFailed", "SMTP relay unreachable")
        self.otps.append((email, code))

    async def send_welcome(self, email, name=None):
        if self.fail_welcome:
            raise DependencyError("NotificationFailed", "SMTP relay unreachable")
        self.welcomes.append(email)

    def last_code(self, email: str) -> str:
        return [code for to, code in self.otps if to == email][-1]


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'buddy_test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tokens():
    return TokenIssuer(TEST_SECRET)


@pytest.fixture
def oauth_provider():
    return GoogleOAuthProvider(
        "client-id",
        "client-secret",
        "http://test/api/auth/google/callback",
        state_secret=TEST_SECRET,
    )


def make_service(session, notifier, clock, tokens, oauth=None) -> AuthService:
    return AuthService(
        CredentialStore(session),
        OTPManager(clock=clock),
        tokens,
        notifier,
        oauth=oauth,
    )


@pytest.fixture
def service(session, notifier, clock, tokens, oauth_provider):
    return make_service(session, notifier, clock, tokens, oauth=oauth_provider)


@pytest.fixture
def service_without_oauth(session, notifier, clock, tokens):
    return make_service(session, notifier, clock, tokens)
