"""Usage quota summary endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.catalog import unlimited_feature_for
from services.usage import get_usage_summary

router = APIRouter()


@router.get("/{feature_key}")
async def usage_summary(
    feature_key: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current-period count for one usage feature; never increments."""
    result = await get_usage_summary(
        auth.user_id,
        feature_key,
        db,
        unlimited_feature_key=unlimited_feature_for(feature_key),
    )
    return {"ok": True, "feature": feature_key, **result.to_dict()}
