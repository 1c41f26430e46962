import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.credit_package import CreditPackage
from routers.rate_limit import InMemoryRateLimiter


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Keep in-memory rate-limit state isolated between tests."""
    previous_flag = getattr(app.state, "disable_rate_limits", False)
    previous_limiter = getattr(app.state, "rate_limiter", None)
    app.state.disable_rate_limits = True
    app.state.rate_limiter = InMemoryRateLimiter()
    yield
    app.state.rate_limiter = previous_limiter
    app.state.disable_rate_limits = previous_flag


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "wishtune.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_packages(session_maker):
    async with session_maker() as session:
        session.add_all(
            [
                CreditPackage(id="pkg-large", name="Party Pack", credits=25, price=199.0, popular=False, active=True),
                CreditPackage(id="pkg-small", name="Starter", credits=5, price=49.0, popular=False, active=None),
                CreditPackage(id="pkg-medium", name="Celebration", credits=10, price=89.0, popular=True, active=True),
                CreditPackage(id="pkg-retired", name="Retired", credits=3, price=9.0, popular=False, active=False),
            ]
        )
        await session.commit()
    return {"small": "pkg-small", "medium": "pkg-medium", "large": "pkg-large", "retired": "pkg-retired"}
