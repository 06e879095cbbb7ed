"""Premium-only resource guarded by a capability token."""

from fastapi import APIRouter, Depends

from routers.capability_scope import require_capability
from services.capability_tokens import CapabilityGrant
from services.catalog import PREMIUM_CAPABILITIES

router = APIRouter()


@router.get("/premium")
async def premium_resource(grant: CapabilityGrant = Depends(require_capability(*sorted(PREMIUM_CAPABILITIES)))):
    return {"ok": True, "user_id": grant.subject, "feature": grant.feature}
