"""
Pytest fixtures for the login gateway tests.
"""

from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from airsafety.config import Settings, get_settings
from airsafety.database import build_engine, build_session_maker, init_db
from airsafety.kernel.events.audit_logger import AuditLogger
from airsafety.kernel.events.event_types import LoginAuditEvent
from airsafety.kernel.identity.identity_service import IdentityService
from airsafety.kernel.identity.jwt import JWTManager
from airsafety.kernel.models.user import User, UserRole
from airsafety.kernel.ratelimit.rate_limiter import RateLimiter

TEST_SECRET = "test-secret-key-for-testing-only-0123456789"
ADMIN_EMAIL = "admin@airline.com"
ADMIN_PASSWORD = "Configured-Admin-Pass-1"


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class RecordingAuditLogger(AuditLogger):
    """Audit logger that keeps entries in memory instead of shipping them."""

    def __init__(self):
        super().__init__()
        self.events: List[LoginAuditEvent] = []

    async def deliver(self, event: LoginAuditEvent) -> None:
        self.events.append(event)

    @property
    def outcomes(self) -> List[str]:
        return [event.outcome.value for event in self.events]


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; never read from the environment's .env."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        secret_key=TEST_SECRET,
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
        environment="test",
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite engine per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(session_factory, clock) -> RateLimiter:
    return RateLimiter(session_factory, timeout_seconds=5.0, clock=clock)


@pytest.fixture
def audit() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def jwt_manager() -> JWTManager:
    """Create a JWT manager for tests."""
    return JWTManager(secret_key=TEST_SECRET, algorithm="HS256", expire_days=7)


async def create_account(
    session_factory,
    email: str,
    password: str,
    role: UserRole = UserRole.CAPTAIN,
    hashed: bool = False,
) -> User:
    """Insert and commit an account."""
    async with session_factory() as session:
        user = await IdentityService(session).create_user(
            email=email,
            password=password,
            first_name="Test",
            last_name="Pilot",
            role=role,
            hashed=hashed,
        )
        await session.commit()
        return user


async def stored_credential(session_factory, email: str):
    async with session_factory() as session:
        user = await IdentityService(session).get_user_by_email(email)
        return user.credential if user else None


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    """Create a captain with a bcrypt credential."""
    return await create_account(session_factory, "pilot@airline.com", "TestPassword123")


@pytest_asyncio.fixture
async def client(settings, session_factory, rate_limiter, audit) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the per-test database."""
    from airsafety.api import deps
    from airsafety.main import app

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[deps.get_audit_logger] = lambda: audit

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
