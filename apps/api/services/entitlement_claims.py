"""Short-lived signed entitlement claims.

A claim snapshots `{subject, plan, features}` for a session. It is stateless
(no server-side record) and may be presented any number of times until it
expires; its only use is to request capability tokens.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.billing import get_current_plan
from services.catalog import PLAN_KEYS
from services.entitlements import resolve_features
from services.errors import ClaimError
from services.signed_tokens import SignedTokenError, decode_typed_token, encode_typed_token


CLAIM_TOKEN_TYPE = "entitlement_claim"
CLAIM_VERSION = 1


@dataclass(frozen=True)
class EntitlementClaim:
    subject: str
    plan: str
    features: FrozenSet[str]
    claim_id: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "plan": self.plan,
            "features": sorted(self.features),
            "jti": self.claim_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }


def issue_claim(
    user_id: str,
    plan: str,
    features: Iterable[str] = (),
    *,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Sign a claim for `user_id`. Returns `{token, expires_at, claim}`."""
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.ENTITLEMENT_CLAIM_TTL_SECONDS)
    signed = encode_typed_token(
        {
            "sub": user_id,
            "plan": plan,
            "features": sorted(set(features)),
            "jti": str(uuid.uuid4()),
            "ver": CLAIM_VERSION,
        },
        secret=settings.ENTITLEMENT_CLAIM_SECRET,
        token_type=CLAIM_TOKEN_TYPE,
        ttl_seconds=ttl,
        now=now,
    )
    return {
        "token": signed["token"],
        "expires_at": signed["expires_at"],
        "claim": _claim_from_payload(signed["payload"]),
    }


def verify_claim(token: str) -> EntitlementClaim:
    """Verify signature, type tag and expiry. Any failure is `invalid_claim`."""
    try:
        payload = decode_typed_token(
            token,
            secret=settings.ENTITLEMENT_CLAIM_SECRET,
            token_type=CLAIM_TOKEN_TYPE,
        )
        return _claim_from_payload(payload)
    except (SignedTokenError, KeyError, TypeError, ValueError) as exc:
        raise ClaimError() from exc


def _claim_from_payload(payload: Dict[str, Any]) -> EntitlementClaim:
    plan = payload["plan"]
    features = payload.get("features", [])
    if plan not in PLAN_KEYS:
        raise ValueError("unknown plan in claim")
    if not isinstance(features, list) or not all(isinstance(item, str) for item in features):
        raise ValueError("malformed feature list in claim")
    return EntitlementClaim(
        subject=str(payload["sub"]),
        plan=plan,
        features=frozenset(features),
        claim_id=str(payload.get("jti", "")),
        issued_at=int(payload["iat"]),
        expires_at=int(payload["exp"]),
    )


async def issue_claim_for_user(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Resolve plan and features from the store (no cached view) and sign a claim."""
    plan = await get_current_plan(user_id, db)
    features = await resolve_features(user_id, db)
    return issue_claim(user_id, plan, features)
