"""
Capability tokens: single-use credentials bound to one operation.

Issuance exchanges a verified entitlement claim for a token bound to
`{subject, feature, method, path, token id}` and records the id in the token
ledger before signing; if the ledger write fails nothing is returned.

Consumption runs the checks in a fixed order, each with its own reason:
token_required, token_invalid, token_mismatch, feature_forbidden,
token_user_mismatch (when a session subject is supplied), replay_or_expired.
Only a successful ledger consume authorizes the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlsplit
import uuid

from config import settings
from services.catalog import get_capability_rule
from services.clock import utcnow
from services.entitlement_claims import EntitlementClaim, verify_claim
from services.errors import CapabilityRejected, ForbiddenPlanError, GateError, LedgerUnavailable
from services.signed_tokens import ExpiredTokenError, SignedTokenError, decode_typed_token, encode_typed_token
from services.token_ledger import LedgerRecord, TokenLedger


logger = logging.getLogger(__name__)

CAPABILITY_TOKEN_TYPE = "capability"
ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


@dataclass(frozen=True)
class CapabilityGrant:
    """Outcome of a successful consumption."""

    subject: str
    feature: str
    method: str
    path: str
    token_id: str


def normalize_method(value: Any) -> str:
    method = str(value or "").strip().upper()
    return method if method in ALLOWED_METHODS else ""


def normalize_path(value: Any) -> str:
    """Reduce a URL or path to a canonical absolute path ("" when unusable)."""
    raw = str(value or "").strip()
    if not raw:
        return ""
    if raw.startswith(("http://", "https://")):
        raw = urlsplit(raw).path or "/"
    raw = raw.split("?", 1)[0].split("#", 1)[0]
    if not raw.startswith("/") or raw.startswith("//") or any(ch.isspace() for ch in raw):
        return ""
    if len(raw) > 1:
        raw = raw.rstrip("/") or "/"
    return raw


async def issue_capability_token(
    claim: EntitlementClaim,
    feature: str,
    method: str,
    path: str,
    ledger: TokenLedger,
    *,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Mint a token for a verified claim. Returns `{token, expires_at, token_id}`."""
    feature_key = str(feature or "").strip()
    if not feature_key:
        raise GateError("missing_feature", status_code=400)
    rule = get_capability_rule(feature_key)
    if rule is None:
        raise GateError("unknown_feature", status_code=400, feature=feature_key)
    bound_method = normalize_method(method)
    if not bound_method:
        raise GateError("invalid_method", status_code=400)
    bound_path = normalize_path(path)
    if not bound_path:
        raise GateError("invalid_path", status_code=400)

    if not rule.allows(claim.plan, claim.features):
        logger.info("capability_denied user=%s feature=%s plan=%s", claim.subject, feature_key, claim.plan)
        raise ForbiddenPlanError(feature_key)

    issued_at = now or utcnow()
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.CAPABILITY_TOKEN_TTL_SECONDS)
    token_id = str(uuid.uuid4())
    record = LedgerRecord(
        token_id=token_id,
        user_id=claim.subject,
        feature=feature_key,
        method=bound_method,
        path=bound_path,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=ttl),
    )
    try:
        await ledger.insert(record)
    except LedgerUnavailable:
        logger.error(
            "capability_issue_failed token_id=%s user=%s feature=%s: ledger unavailable",
            token_id,
            claim.subject,
            feature_key,
        )
        raise

    signed = encode_typed_token(
        {
            "sub": claim.subject,
            "feature": feature_key,
            "htm": bound_method,
            "htu": bound_path,
            "jti": token_id,
        },
        secret=settings.CAPABILITY_TOKEN_SECRET,
        token_type=CAPABILITY_TOKEN_TYPE,
        ttl_seconds=ttl,
        now=issued_at,
    )
    logger.info(
        "capability_issued token_id=%s user=%s feature=%s %s %s tier=%s",
        token_id,
        claim.subject,
        feature_key,
        bound_method,
        bound_path,
        ledger.tier,
    )
    return {"token": signed["token"], "expires_at": signed["expires_at"], "token_id": token_id}


async def exchange_claim_for_token(
    raw_claim: str,
    feature: str,
    method: str,
    path: str,
    ledger: TokenLedger,
) -> Dict[str, Any]:
    """Verify a raw claim (ClaimError on failure) and mint a token from it."""
    claim = verify_claim(raw_claim)
    return await issue_capability_token(claim, feature, method, path, ledger)


def _reject(reason: str, token_id: Optional[str] = None, user_id: Optional[str] = None) -> CapabilityRejected:
    logger.info("capability_rejected reason=%s token_id=%s user=%s", reason, token_id, user_id)
    return CapabilityRejected(reason)


async def consume_capability_token(
    raw_token: Optional[str],
    method: str,
    path: str,
    allowed_features: Iterable[str],
    ledger: TokenLedger,
    *,
    expected_subject: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CapabilityGrant:
    """Validate a presented token against the request and consume it exactly once.

    `expected_subject`, when given, must equal the token subject; the check
    runs before the ledger so a foreign token is not burned.
    """
    token = str(raw_token or "").strip()
    if not token:
        raise _reject("token_required")

    try:
        payload = decode_typed_token(
            token,
            secret=settings.CAPABILITY_TOKEN_SECRET,
            token_type=CAPABILITY_TOKEN_TYPE,
        )
    except ExpiredTokenError:
        raise _reject("replay_or_expired") from None
    except SignedTokenError:
        raise _reject("token_invalid") from None

    subject = str(payload.get("sub", ""))
    token_id = payload.get("jti")
    feature = payload.get("feature")
    bound_method = payload.get("htm")
    bound_path = payload.get("htu")
    if not all(isinstance(value, str) and value for value in (token_id, feature, bound_method, bound_path)):
        raise _reject("token_invalid", user_id=subject)

    if bound_method != normalize_method(method) or bound_path != normalize_path(path):
        raise _reject("token_mismatch", token_id, subject)

    if feature not in set(allowed_features):
        raise _reject("feature_forbidden", token_id, subject)

    if expected_subject is not None and expected_subject != subject:
        raise _reject("token_user_mismatch", token_id, subject)

    try:
        consumed = await ledger.try_consume(token_id, subject, bound_method, bound_path, now=now)
    except LedgerUnavailable:
        logger.error(
            "capability_consume_failed token_id=%s user=%s feature=%s: ledger unavailable, rejecting",
            token_id,
            subject,
            feature,
        )
        raise
    if not consumed:
        raise _reject("replay_or_expired", token_id, subject)

    logger.info("capability_consumed token_id=%s user=%s feature=%s", token_id, subject, feature)
    return CapabilityGrant(
        subject=subject,
        feature=feature,
        method=bound_method,
        path=bound_path,
        token_id=token_id,
    )
