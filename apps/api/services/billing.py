"""Narrow adapter between billing records and the entitlement core.

Billing webhooks and subscription rows are owned elsewhere; everything they
hand us is parsed into `SubscriptionSnapshot` before it reaches grant or
claim logic.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.entitlement_grant import GRANT_SOURCE_PLAN, EntitlementGrant
from models.subscription import Subscription
from services.catalog import PLAN_FREE, normalize_plan, plan_features
from services.clock import utcnow
from services.entitlements import entitlement_view_cache, grant_entitlement, is_grant_active


logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due")


class SubscriptionSnapshot(BaseModel):
    """Validated view of one subscription record."""

    user_id: str = Field(min_length=1)
    plan_key: str = PLAN_FREE
    status: str
    subscription_id: Optional[str] = None

    @field_validator("plan_key", mode="before")
    @classmethod
    def _normalize_plan(cls, value: Any) -> str:
        return normalize_plan(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        status = str(value or "").strip().lower()
        if not status:
            raise ValueError("status is required")
        return status

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


def parse_subscription_payload(payload: Mapping[str, Any]) -> SubscriptionSnapshot:
    """Parse a loosely-typed billing payload; raises pydantic.ValidationError on bad input."""
    data: Dict[str, Any] = dict(payload or {})
    if "plan" in data and "plan_key" not in data:
        data["plan_key"] = data.pop("plan")
    if "id" in data and "subscription_id" not in data:
        data["subscription_id"] = data.pop("id")
    return SubscriptionSnapshot.model_validate(data)


async def get_current_plan(user_id: str, db: AsyncSession) -> str:
    """Plan of the newest active-like subscription, or `free`."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return PLAN_FREE
    snapshot = parse_subscription_payload(
        {"user_id": row.user_id, "plan_key": row.plan_key, "status": row.status, "subscription_id": row.id}
    )
    return snapshot.plan_key


async def retire_subscription_grants(subscription_id: str, db: AsyncSession, *, commit: bool = True) -> int:
    """Delete plan grants linked to a subscription whose billing status changed."""
    result = await db.execute(
        delete(EntitlementGrant).where(
            EntitlementGrant.subscription_id == subscription_id,
            EntitlementGrant.source == GRANT_SOURCE_PLAN,
        )
    )
    if commit:
        await db.commit()
    entitlement_view_cache.invalidate()
    removed = int(result.rowcount or 0)
    logger.info("subscription_grants_retired subscription=%s removed=%s", subscription_id, removed)
    return removed


async def sync_plan_grants(
    snapshot: SubscriptionSnapshot,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> List[EntitlementGrant]:
    """Bring plan-derived grants in line with a subscription snapshot.

    Active snapshots gain a grant for every plan feature not already held
    through this subscription; inactive ones lose their plan grants.
    """
    if not snapshot.subscription_id:
        raise ValueError("subscription_id is required to sync plan grants")

    if not snapshot.is_active:
        await retire_subscription_grants(snapshot.subscription_id, db)
        return []

    current = now or utcnow()
    result = await db.execute(
        select(EntitlementGrant).where(
            EntitlementGrant.subscription_id == snapshot.subscription_id,
            EntitlementGrant.source == GRANT_SOURCE_PLAN,
        )
    )
    held = {grant.feature_key for grant in result.scalars().all() if is_grant_active(grant, current)}

    created: List[EntitlementGrant] = []
    for feature_key in sorted(plan_features(snapshot.plan_key) - held):
        created.append(
            await grant_entitlement(
                snapshot.user_id,
                feature_key,
                db,
                source=GRANT_SOURCE_PLAN,
                starts_at=current,
                subscription_id=snapshot.subscription_id,
                commit=False,
            )
        )
    await db.commit()
    return created
