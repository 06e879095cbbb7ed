import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.user import User
from services.entitlements import entitlement_view_cache
from services.rate_limiter import rate_limiter
from services.token_ledger import memory_ledger


@pytest.fixture(autouse=True)
def reset_process_local_state():
    """Keep rate-limit windows, degraded ledger rows and cached views isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limiter.local.clear()
    memory_ledger.clear()
    entitlement_view_cache.invalidate()
    yield
    rate_limiter.local.clear()
    memory_ledger.clear()
    entitlement_view_cache.invalidate()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "capability_gate.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def add_users(session_maker):
    async def _add(*user_ids):
        async with session_maker() as session:
            for user_id in user_ids:
                session.add(User(id=user_id, email=f"{user_id}@example.com"))
            await session.commit()

    return _add
