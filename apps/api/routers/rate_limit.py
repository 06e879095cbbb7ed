"""Rate limiting dependencies backed by the shared limiter."""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Request, Response

from config import settings
from services.errors import RateLimitExceeded
from services.rate_limiter import RateLimitResult, rate_limiter


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def rate_limits_disabled(request: Request) -> bool:
    return not settings.RATE_LIMIT_ENABLED or bool(getattr(request.app.state, "disable_rate_limits", False))


async def enforce_rate_limit(
    namespace: str,
    key: str,
    limit: int,
    window_seconds: int,
    response: Optional[Response] = None,
) -> RateLimitResult:
    """Count one attempt; attach RateLimit-* headers or raise RateLimitExceeded."""
    result = await rate_limiter.attempt(namespace, key, limit, window_seconds)
    headers = result.headers(rate_limiter.clock())
    if not result.allowed:
        raise RateLimitExceeded(namespace, headers)
    if response is not None:
        response.headers.update(headers)
    return result


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request, response: Response):
        if rate_limits_disabled(request):
            return
        await enforce_rate_limit(prefix, _client_identifier(request), limit, window_seconds, response)

    return _dependency
