"""Capability token issuance endpoint."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from config import settings
from routers.auth_scope import get_bearer_claim
from routers.capability_scope import get_token_ledger
from routers.rate_limit import enforce_rate_limit, rate_limits_disabled
from services.capability_tokens import issue_capability_token
from services.entitlement_claims import verify_claim
from services.token_ledger import TokenLedger

router = APIRouter()


class CapabilityTokenRequest(BaseModel):
    # Optional so that missing fields map to the endpoint's own 400 codes.
    feature: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None


@router.post("/capability-token")
async def create_capability_token(
    payload: CapabilityTokenRequest,
    request: Request,
    response: Response,
    raw_claim: str = Depends(get_bearer_claim),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    """Exchange an entitlement claim for a token bound to one operation."""
    claim = verify_claim(raw_claim)

    if not rate_limits_disabled(request):
        feature_scope = str(payload.feature or "").strip() or "unknown"
        await enforce_rate_limit(
            "capability_token",
            f"{claim.subject}:{feature_scope}",
            settings.RATE_LIMIT_CAPABILITY_LIMIT,
            settings.RATE_LIMIT_CAPABILITY_WINDOW_SECONDS,
            response,
        )

    issued = await issue_capability_token(claim, payload.feature, payload.method, payload.path, ledger)
    response.headers["Cache-Control"] = "no-store"
    return {
        "ok": True,
        "token": issued["token"],
        "expiresAt": issued["expires_at"],
        "feature": str(payload.feature).strip(),
        "tier": ledger.tier,
    }
