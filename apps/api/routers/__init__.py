"""Routers package."""

from . import (
    health,
    entitlements,
    capability,
    messages,
    premium,
    usage,
    dev_grants,
)
