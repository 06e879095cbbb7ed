"""Entitlement claim and summary endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import enforce_rate_limit, rate_limits_disabled
from services.billing import get_current_plan
from services.entitlement_claims import issue_claim_for_user
from services.entitlements import resolve_features_cached

router = APIRouter()


@router.get("/entitlements-claim")
async def get_entitlements_claim(
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Sign a short-lived snapshot of the caller's plan and features."""
    if not rate_limits_disabled(request):
        await enforce_rate_limit(
            "entitlements_claim",
            auth.user_id,
            settings.RATE_LIMIT_DEFAULT_LIMIT,
            settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS,
            response,
        )
    issued = await issue_claim_for_user(auth.user_id, db)
    claim = issued["claim"]
    response.headers["Cache-Control"] = "no-store"
    return {
        "ok": True,
        "claim": issued["token"],
        "expires_at": issued["expires_at"],
        "plan": claim.plan,
        "features": sorted(claim.features),
    }


@router.get("/entitlements")
async def get_entitlements_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Plan and active features; the feature list may lag grants by the cache TTL."""
    plan = await get_current_plan(auth.user_id, db)
    features = await resolve_features_cached(auth.user_id, db)
    return {"ok": True, "user_id": auth.user_id, "plan": plan, "features": sorted(features)}
