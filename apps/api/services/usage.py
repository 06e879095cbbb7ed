"""Period-bounded usage quota accounting."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.usage_counter import UsageCounter
from services.clock import utcnow
from services.entitlements import has_active_feature
from services.errors import StoreUnavailable, UsageLimitExceeded


logger = logging.getLogger(__name__)

PERIOD_MONTH = "month"
PERIOD_DAY = "day"


def current_period_start(now: Optional[datetime] = None, period: Optional[str] = None) -> datetime:
    """Start of the UTC usage period containing `now`."""
    current = now or utcnow()
    granularity = (period or settings.USAGE_PERIOD or PERIOD_MONTH).strip().lower()
    if granularity == PERIOD_DAY:
        return current.replace(hour=0, minute=0, second=0, microsecond=0)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class UsageResult:
    limit: Optional[int]
    remaining: Optional[int]
    unlimited: bool
    count: Optional[int] = None
    period_start: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "unlimited": self.unlimited,
            "count": self.count,
            "period_start": self.period_start.isoformat() if self.period_start else None,
        }


def _counter_key(user_id: str, feature_key: str, period_start: datetime):
    return (
        UsageCounter.user_id == user_id,
        UsageCounter.feature_key == feature_key,
        UsageCounter.period_start == period_start,
    )


async def _ensure_counter_row(db: AsyncSession, user_id: str, feature_key: str, period_start: datetime) -> None:
    values = {"user_id": user_id, "feature_key": feature_key, "period_start": period_start, "count": 0}
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        insert = None

    if insert is not None:
        await db.execute(
            insert(UsageCounter)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["user_id", "feature_key", "period_start"])
        )
        return

    existing = await db.execute(select(UsageCounter.count).where(*_counter_key(user_id, feature_key, period_start)))
    if existing.scalar_one_or_none() is not None:
        return
    try:
        async with db.begin_nested():
            db.add(UsageCounter(**values))
    except IntegrityError:
        pass


async def _read_count(db: AsyncSession, user_id: str, feature_key: str, period_start: datetime) -> int:
    result = await db.execute(select(UsageCounter.count).where(*_counter_key(user_id, feature_key, period_start)))
    return int(result.scalar_one_or_none() or 0)


async def _increment_if_under_limit(
    db: AsyncSession,
    user_id: str,
    feature_key: str,
    free_limit: int,
    period_start: datetime,
) -> Optional[int]:
    await _ensure_counter_row(db, user_id, feature_key, period_start)
    result = await db.execute(
        update(UsageCounter)
        .where(*_counter_key(user_id, feature_key, period_start), UsageCounter.count < free_limit)
        .values(count=UsageCounter.count + 1)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await db.commit()
        return None
    count = await _read_count(db, user_id, feature_key, period_start)
    await db.commit()
    return count


async def check_and_increment_usage(
    user_id: str,
    feature_key: str,
    db: AsyncSession,
    *,
    free_limit: Optional[int] = None,
    unlimited_feature_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UsageResult:
    """Count one use of `feature_key`, or raise UsageLimitExceeded without counting.

    An active `unlimited_feature_key` grant bypasses the counter entirely.
    """
    current = now or utcnow()
    limit = max(int(free_limit if free_limit is not None else settings.USAGE_FREE_LIMIT), 0)
    period_start = current_period_start(current)

    try:
        if unlimited_feature_key and await asyncio.wait_for(
            has_active_feature(user_id, unlimited_feature_key, db, current),
            timeout=settings.DATABASE_TIMEOUT_SECONDS,
        ):
            return UsageResult(limit=None, remaining=None, unlimited=True, period_start=period_start)

        count = await asyncio.wait_for(
            _increment_if_under_limit(db, user_id, feature_key, limit, period_start),
            timeout=settings.DATABASE_TIMEOUT_SECONDS,
        )
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        logger.error("usage_store_failed user=%s feature=%s: %s", user_id, feature_key, exc)
        raise StoreUnavailable("usage") from exc

    if count is None:
        logger.info("usage_limit_reached user=%s feature=%s limit=%s", user_id, feature_key, limit)
        raise UsageLimitExceeded(feature_key, limit)

    return UsageResult(
        limit=limit,
        remaining=max(limit - count, 0),
        unlimited=False,
        count=count,
        period_start=period_start,
    )


async def get_usage_summary(
    user_id: str,
    feature_key: str,
    db: AsyncSession,
    *,
    free_limit: Optional[int] = None,
    unlimited_feature_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UsageResult:
    """Read-only view of the current period; never creates or increments rows."""
    current = now or utcnow()
    limit = max(int(free_limit if free_limit is not None else settings.USAGE_FREE_LIMIT), 0)
    period_start = current_period_start(current)
    if unlimited_feature_key and await has_active_feature(user_id, unlimited_feature_key, db, current):
        return UsageResult(limit=None, remaining=None, unlimited=True, period_start=period_start)
    count = await _read_count(db, user_id, feature_key, period_start)
    return UsageResult(
        limit=limit,
        remaining=max(limit - count, 0),
        unlimited=False,
        count=count,
        period_start=period_start,
    )


async def release_usage(user_id: str, feature_key: str, db: AsyncSession, usage: UsageResult) -> None:
    """Give back a use counted by check_and_increment_usage when the request is then refused."""
    if usage.unlimited or usage.period_start is None:
        return
    try:
        await asyncio.wait_for(
            _decrement(db, user_id, feature_key, usage.period_start),
            timeout=settings.DATABASE_TIMEOUT_SECONDS,
        )
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        logger.error("usage_release_failed user=%s feature=%s: %s", user_id, feature_key, exc)
        raise StoreUnavailable("usage") from exc


async def _decrement(db: AsyncSession, user_id: str, feature_key: str, period_start: datetime) -> None:
    await db.execute(
        update(UsageCounter)
        .where(*_counter_key(user_id, feature_key, period_start), UsageCounter.count > 0)
        .values(count=UsageCounter.count - 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
