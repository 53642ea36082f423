"""
Shared fixtures: an in-memory SQLite database (aiosqlite) with the full schema,
sessions on it, and small factories for users, assets and proof pages.
"""

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import User, Asset, UserStatus, AssetStatus
from app.services.credit_ledger import CreditLedger
from app.services.link_verifier import LinkVerifier
from app.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    import app.models  # noqa: F401
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    """Create a user; starting credits are granted through the ledger so balances reconcile."""
    counter = {"n": 0}

    async def _make(credits: int = 0, role: str = "user", suspended: bool = False) -> User:
        counter["n"] += 1
        now = utcnow()
        user = User(
            external_id=f"ext-{counter['n']}",
            email=f"user{counter['n']}@example.com",
            display_name=f"User {counter['n']}",
            role=role,
            credits=0,
            status=UserStatus.SUSPENDED.value if suspended else UserStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        await db.flush()
        if credits:
            await CreditLedger(db).add(user.id, credits, "Test funding")
        return user

    return _make


@pytest.fixture
def make_asset(db):
    counter = {"n": 0}

    async def _make(owner: User, industry: str | None = None, status: str = AssetStatus.APPROVED.value) -> Asset:
        counter["n"] += 1
        now = utcnow()
        asset = Asset(
            owner_id=owner.id,
            domain=f"site{counter['n']}.example.org",
            industry=industry,
            status=status,
            created_at=now,
            updated_at=now,
        )
        db.add(asset)
        await db.flush()
        return asset

    return _make


@pytest.fixture
def page_verifier():
    """Build a LinkVerifier whose every fetch returns the given page."""
    def _build(html: str = "", status_code: int = 200) -> LinkVerifier:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, text=html, headers={"Content-Type": "text/html"})

        return LinkVerifier(transport=httpx.MockTransport(handler))

    return _build
