"""Typed HS256 JWT helpers shared by session, claim and capability tokens.

Each token family signs with its own secret and embeds a `type` tag; decoding
rejects a token whose tag does not match the family the caller expects, so a
leaked secret for one family cannot mint tokens accepted by another.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


class SignedTokenError(ValueError):
    """Raised for any signature, expiry, type or shape failure."""


class ExpiredTokenError(SignedTokenError):
    """Signature is valid but the token is past its `exp`."""


def encode_typed_token(
    claims: Dict[str, Any],
    *,
    secret: str,
    token_type: str,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Sign `claims` with iat/exp and a type tag. Returns token and expiry (unix seconds)."""
    if not secret:
        raise SignedTokenError("Signing secret is not configured.")
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=int(ttl_seconds))
    payload = dict(claims)
    payload.update(
        {
            "type": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
    )
    token = jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)
    return {"token": token, "expires_at": payload["exp"], "payload": payload}


def decode_typed_token(token: str, *, secret: str, token_type: str) -> Dict[str, Any]:
    """Verify signature and expiry, then require the expected type tag and a subject."""
    if not token or not secret:
        raise SignedTokenError("Missing token or secret.")
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise ExpiredTokenError("Token expired.") from exc
    except JWTError as exc:
        raise SignedTokenError("Invalid or expired token.") from exc

    if str(payload.get("type", "")).strip() != token_type:
        raise SignedTokenError("Unexpected token type.")
    if not str(payload.get("sub", "")).strip():
        raise SignedTokenError("Token missing subject.")
    return payload
