"""Session token helpers for backend-authenticated user scope."""

from typing import Any, Dict, Optional

from config import settings
from services.signed_tokens import SignedTokenError, decode_typed_token, encode_typed_token


SESSION_TOKEN_TYPE = "gate_session"


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token payload for API authentication."""
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    claims: Dict[str, Any] = {"sub": user_id}
    if email:
        claims["email"] = email

    signed = encode_typed_token(
        claims,
        secret=settings.JWT_SECRET,
        token_type=SESSION_TOKEN_TYPE,
        ttl_seconds=max(ttl_hours, 1) * 3600,
    )
    return {
        "token": signed["token"],
        "expires_at": signed["expires_at"],
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    try:
        return decode_typed_token(token, secret=settings.JWT_SECRET, token_type=SESSION_TOKEN_TYPE)
    except SignedTokenError as exc:
        raise ValueError("Invalid or expired session token.") from exc
