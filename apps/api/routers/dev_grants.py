"""Development-only shortcuts that grant messaging entitlements to the caller."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import is_production, settings
from database import get_db
from models.entitlement_grant import GRANT_SOURCE_ADMIN, GRANT_SOURCE_TRIAL, EntitlementGrant
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.catalog import FEATURE_MESSAGING_TRIAL, FEATURE_MESSAGING_UNLIMITED
from services.clock import utcnow
from services.entitlements import grant_entitlement, has_active_feature
from services.users import ensure_user

router = APIRouter()


def _ensure_dev_environment() -> None:
    if is_production():
        raise HTTPException(status_code=404, detail="Not Found")


def _serialize_grant(grant: EntitlementGrant) -> dict:
    return {
        "id": grant.id,
        "feature_key": grant.feature_key,
        "source": grant.source,
        "starts_at": grant.starts_at.isoformat() if grant.starts_at else None,
        "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
    }


@router.post("/grants/messages-unlimited")
async def grant_messages_unlimited(
    _rate_limit: None = Depends(rate_limit("dev_grants", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    _ensure_dev_environment()
    if await has_active_feature(auth.user_id, FEATURE_MESSAGING_UNLIMITED, db):
        return {"ok": True, "already": True}

    await ensure_user(db, auth.user_id)
    grant = await grant_entitlement(auth.user_id, FEATURE_MESSAGING_UNLIMITED, db, source=GRANT_SOURCE_ADMIN)
    return {"ok": True, "already": False, "grant": _serialize_grant(grant)}


@router.post("/grants/messages-trial")
async def grant_messages_trial(
    _rate_limit: None = Depends(rate_limit("dev_grants", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    _ensure_dev_environment()
    now = utcnow()
    if await has_active_feature(auth.user_id, FEATURE_MESSAGING_TRIAL, db, now):
        return {"ok": True, "already": True}

    await ensure_user(db, auth.user_id)
    grant = await grant_entitlement(
        auth.user_id,
        FEATURE_MESSAGING_TRIAL,
        db,
        source=GRANT_SOURCE_TRIAL,
        starts_at=now,
        expires_at=now + timedelta(days=max(int(settings.TRIAL_DURATION_DAYS), 1)),
    )
    return {"ok": True, "already": False, "grant": _serialize_grant(grant)}
