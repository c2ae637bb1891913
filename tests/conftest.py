"""Pytest configuration and fixtures."""

import os

# Test database URL (use SQLite for testing); must be set before src is imported
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"

from typing import AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.db.models import Base, ProviderType, Subject, Subscription, User  # noqa: E402
from src.db.session import get_db  # noqa: E402
from src.main import app  # noqa: E402
from src.services import generation_service as generation_module  # noqa: E402
from src.services.errors import ProviderError  # noqa: E402
from src.services.ledger import UsageLedger  # noqa: E402
from src.services.providers import (  # noqa: E402
    MUSIC_CALLBACK_PATH,
    VIDEO_CALLBACK_PATH,
    get_provider_registry,
)

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-ms clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeProvider:
    """Records submissions and hands out sequential task ids."""

    def __init__(self, provider_type: ProviderType, callback_path: str):
        self.provider_type = provider_type
        self.callback_path = callback_path
        self.submitted: list[dict] = []
        self.fail_with: Optional[Exception] = None

    def callback_url(self, base_url: Optional[str] = None) -> str:
        return f"{base_url or 'http://test'}{self.callback_path}"

    async def submit(self, payload: dict, callback_url: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.submitted.append({"payload": payload, "callback_url": callback_url})
        return f"{self.provider_type.value}-task-{len(self.submitted)}"

    def fail(self, message: str = "provider unavailable"):
        self.fail_with = ProviderError(message, status_code=503)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def providers() -> dict:
    return {
        ProviderType.MUSIC: FakeProvider(ProviderType.MUSIC, MUSIC_CALLBACK_PATH),
        ProviderType.VIDEO: FakeProvider(ProviderType.VIDEO, VIDEO_CALLBACK_PATH),
    }


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine with a fresh schema."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, session_maker, providers, monkeypatch
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: providers
    # Background pumps open their own sessions
    monkeypatch.setattr(generation_module, "async_session_maker", session_maker)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def make_user(
    db: AsyncSession,
    tier: str = "free",
    ledger: Optional[UsageLedger] = None,
) -> tuple[User, Subscription]:
    """Create a user with an active subscription on ``tier``."""
    user = User()
    db.add(user)
    await db.commit()

    subscription = await (ledger or UsageLedger()).create_subscription(db, user.id, tier=tier)
    return user, subscription


async def make_subject(
    db: AsyncSession, owner_id: str, content: str = "A quiet walk by the sea"
) -> Subject:
    subject = Subject(owner_id=owner_id, content=content, title="Sea walk")
    db.add(subject)
    await db.commit()
    return subject


@pytest_asyncio.fixture
async def user(db_session: AsyncSession) -> User:
    user, _ = await make_user(db_session)
    return user


@pytest_asyncio.fixture
async def api_key(db_session: AsyncSession, user: User) -> tuple[str, str]:
    """Create a test API key."""
    from src.auth.security import create_api_key

    api_key_model, full_key = await create_api_key(
        db_session,
        name="Test Key",
        user_id=user.id,
        scopes=["music", "video"],
    )
    await db_session.commit()

    return api_key_model.id, full_key


@pytest_asyncio.fixture
async def auth_headers(api_key: tuple[str, str]) -> dict:
    """Get auth headers with test API key."""
    _, full_key = api_key
    return {"Authorization": f"Bearer {full_key}"}
