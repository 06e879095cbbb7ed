"""
Entitlement resolution over stored grants.

A grant is active at `at` when `starts_at <= at` and `expires_at` is NULL or
later than `at`. A user's features are the union over active grants; an
unknown user or one without active grants resolves to the empty set (free
tier), which is not an error.

`resolve_features` always reads the store and is what claim and token
issuance use. `resolve_features_cached` serves listing-style callers from a
process-local view whose staleness is bounded by
ENTITLEMENT_CACHE_TTL_SECONDS.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple
import uuid

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.entitlement_grant import GRANT_SOURCES, EntitlementGrant
from services.clock import ensure_utc, utcnow


logger = logging.getLogger(__name__)


def _active_clause(at: datetime):
    return (
        EntitlementGrant.starts_at <= at,
        or_(EntitlementGrant.expires_at.is_(None), EntitlementGrant.expires_at > at),
    )


def is_grant_active(grant: EntitlementGrant, at: Optional[datetime] = None) -> bool:
    now = at or utcnow()
    starts_at = ensure_utc(grant.starts_at)
    expires_at = ensure_utc(grant.expires_at)
    if starts_at is None or starts_at > now:
        return False
    return expires_at is None or expires_at > now


async def resolve_features(user_id: str, db: AsyncSession, at: Optional[datetime] = None) -> FrozenSet[str]:
    """Return the feature keys with at least one active grant for `user_id`."""
    if not user_id:
        return frozenset()
    now = at or utcnow()
    result = await db.execute(
        select(EntitlementGrant.feature_key)
        .where(EntitlementGrant.user_id == user_id, *_active_clause(now))
        .distinct()
    )
    return frozenset(str(key) for key in result.scalars().all())


async def has_active_feature(
    user_id: str,
    feature_key: str,
    db: AsyncSession,
    at: Optional[datetime] = None,
) -> bool:
    now = at or utcnow()
    result = await db.execute(
        select(EntitlementGrant.id)
        .where(
            EntitlementGrant.user_id == user_id,
            EntitlementGrant.feature_key == feature_key,
            *_active_clause(now),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_active_grants(
    user_id: str,
    db: AsyncSession,
    at: Optional[datetime] = None,
) -> List[EntitlementGrant]:
    now = at or utcnow()
    result = await db.execute(
        select(EntitlementGrant)
        .where(EntitlementGrant.user_id == user_id, *_active_clause(now))
        .order_by(EntitlementGrant.starts_at.asc())
    )
    return list(result.scalars().all())


async def grant_entitlement(
    user_id: str,
    feature_key: str,
    db: AsyncSession,
    *,
    source: str,
    starts_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    subscription_id: Optional[str] = None,
    commit: bool = True,
) -> EntitlementGrant:
    """Add a grant row. Existing grants are never edited."""
    if source not in GRANT_SOURCES:
        raise ValueError(f"Unknown grant source: {source}")
    start = starts_at or utcnow()
    if expires_at is not None and expires_at <= start:
        raise ValueError("expires_at must be later than starts_at")

    grant = EntitlementGrant(
        id=str(uuid.uuid4()),
        user_id=user_id,
        feature_key=feature_key,
        source=source,
        subscription_id=subscription_id,
        starts_at=start,
        expires_at=expires_at,
    )
    db.add(grant)
    await db.flush()
    if commit:
        await db.commit()
    entitlement_view_cache.invalidate(user_id)
    logger.info("entitlement_granted user=%s feature=%s source=%s", user_id, feature_key, source)
    return grant


class EntitlementViewCache:
    """Bounded, TTL-based, process-local view of resolved features.

    Entries may be up to `ttl_seconds` stale and are not shared between
    processes. Never consult this view on claim or token issuance paths.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 2048):
        self.ttl_seconds = max(float(ttl_seconds), 0.0)
        self.max_entries = max(int(max_entries), 1)
        self._entries: "OrderedDict[str, Tuple[float, FrozenSet[str]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[FrozenSet[str]]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            expires, features = entry
            if expires <= time.monotonic():
                self._entries.pop(user_id, None)
                return None
            self._entries.move_to_end(user_id)
            return features

    def put(self, user_id: str, features: FrozenSet[str]) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[user_id] = (time.monotonic() + self.ttl_seconds, features)
            self._entries.move_to_end(user_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
            else:
                self._entries.pop(user_id, None)


entitlement_view_cache = EntitlementViewCache(settings.ENTITLEMENT_CACHE_TTL_SECONDS)


async def resolve_features_cached(user_id: str, db: AsyncSession) -> FrozenSet[str]:
    cached = entitlement_view_cache.get(user_id)
    if cached is not None:
        return cached
    features = await resolve_features(user_id, db)
    entitlement_view_cache.put(user_id, features)
    return features
