"""
Machine-readable failures raised by the gating services.

Every error carries a stable `code` that is returned verbatim to clients as
`{"ok": false, "error": code, ...}`; main.py registers the handler.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GateError(Exception):
    """Base error with an HTTP status and a stable reason code."""

    status_code = 400

    def __init__(
        self,
        code: str,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        super().__init__(code)
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.headers = dict(headers or {})
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, **self.extra}


class ClaimError(GateError):
    status_code = 401

    def __init__(self, code: str = "invalid_claim"):
        super().__init__(code)


class ForbiddenPlanError(GateError):
    status_code = 403

    def __init__(self, feature: str):
        super().__init__("forbidden_plan", feature=feature)


# token_mismatch and feature_forbidden concern a valid credential used out of
# bounds (authorization); everything else is an authentication failure.
CAPABILITY_REJECTION_STATUS = {
    "token_required": 401,
    "token_invalid": 401,
    "replay_or_expired": 401,
    "token_mismatch": 403,
    "feature_forbidden": 403,
    "token_user_mismatch": 403,
}


class CapabilityRejected(GateError):
    """A capability token failed one of the consumption checks."""

    def __init__(self, reason: str):
        super().__init__(reason, status_code=CAPABILITY_REJECTION_STATUS.get(reason, 401))
        self.reason = reason


class StoreUnavailable(GateError):
    """A durable store call failed or timed out."""

    status_code = 503

    def __init__(self, operation: str):
        super().__init__("server_error")
        self.operation = operation


class LedgerUnavailable(StoreUnavailable):
    """The durable ledger could not be reached; callers must fail closed."""


class UsageLimitExceeded(GateError):
    status_code = 403

    def __init__(self, feature_key: str, limit: int):
        super().__init__("limit_reached", feature=feature_key, limit=limit)
        self.feature_key = feature_key
        self.limit = limit


class RateLimitExceeded(GateError):
    status_code = 429

    def __init__(self, namespace: str, headers: Dict[str, str]):
        super().__init__("rate_limited", headers=headers, scope=namespace)
