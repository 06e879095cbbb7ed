"""
Async database engine, session factory and schema checks.
"""

from typing import AsyncIterator, Iterable, List

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


Base = declarative_base()

REQUIRED_TABLES = (
    "entitlement_grants",
    "capability_token_ledger",
    "usage_counters",
)


def async_database_url(url: str) -> str:
    """Map a plain postgres DSN onto the asyncpg driver."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


engine = create_async_engine(
    async_database_url(settings.DATABASE_URL),
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        yield session


async def missing_tables(bind: AsyncEngine, required: Iterable[str] = REQUIRED_TABLES) -> List[str]:
    """Return required tables that are not present in the connected schema."""
    async with bind.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return [name for name in required if name not in existing]
