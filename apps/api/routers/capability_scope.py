"""Dependencies that guard endpoints behind single-use capability tokens."""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.capability_tokens import CapabilityGrant, consume_capability_token
from services.token_ledger import TokenLedger, build_token_ledger


async def get_token_ledger(db: AsyncSession = Depends(get_db)) -> TokenLedger:
    return build_token_ledger(db)


def read_capability_token(request: Request) -> Optional[str]:
    return request.headers.get(settings.CAPABILITY_TOKEN_HEADER)


async def consume_for_request(
    request: Request,
    allowed_features,
    ledger: TokenLedger,
    expected_subject: Optional[str] = None,
) -> CapabilityGrant:
    return await consume_capability_token(
        read_capability_token(request),
        request.method,
        request.url.path,
        allowed_features,
        ledger,
        expected_subject=expected_subject,
    )


def require_capability(*allowed_features: str) -> Callable[..., CapabilityGrant]:
    """Dependency that consumes the request's capability token or rejects.

    The token subject must be the session user.
    """
    allowed = frozenset(allowed_features)

    async def _dependency(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
        ledger: TokenLedger = Depends(get_token_ledger),
    ) -> CapabilityGrant:
        return await consume_for_request(request, allowed, ledger, expected_subject=auth.user_id)

    return _dependency
