"""Plan and feature catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional


PLAN_FREE = "free"
PLAN_PREMIUM = "premium"
PLAN_MASTER = "master"
PLAN_KEYS = (PLAN_FREE, PLAN_PREMIUM, PLAN_MASTER)

# Entitlement feature keys held through grants.
FEATURE_MESSAGING_UNLIMITED = "messaging.unlimited"
FEATURE_MESSAGING_TRIAL = "messaging.free_trial"
FEATURE_CHAT_MEDIA = "chat.media"
FEATURE_CONTACTS_VIEW = "contacts.view"
FEATURE_WHATSAPP_HANDOFF = "whatsapp.handoff"

# Capability-only feature: open to every plan, metered by the usage quota.
FEATURE_CHAT_SEND = "chat.send"

USAGE_FEATURE_MESSAGES = "messages"

# Usage feature -> entitlement that lifts its quota.
USAGE_UNLIMITED_FEATURES: Dict[str, str] = {USAGE_FEATURE_MESSAGES: FEATURE_MESSAGING_UNLIMITED}

PAID_PLANS = frozenset({PLAN_PREMIUM, PLAN_MASTER})

PLAN_FEATURES: Dict[str, FrozenSet[str]] = {
    PLAN_FREE: frozenset(),
    PLAN_PREMIUM: frozenset(
        {
            FEATURE_MESSAGING_UNLIMITED,
            FEATURE_CHAT_MEDIA,
            FEATURE_CONTACTS_VIEW,
            FEATURE_WHATSAPP_HANDOFF,
        }
    ),
    PLAN_MASTER: frozenset(
        {
            FEATURE_MESSAGING_UNLIMITED,
            FEATURE_CHAT_MEDIA,
            FEATURE_CONTACTS_VIEW,
            FEATURE_WHATSAPP_HANDOFF,
        }
    ),
}


@dataclass(frozen=True)
class CapabilityRule:
    """Eligibility rule for minting a capability token for one feature.

    A claim is eligible when it carries `entitlement_key` in its feature set.
    Claims minted without any features fall back to the plan check against
    `plans`. An open rule has no restriction at all.
    """

    feature: str
    plans: FrozenSet[str] = field(default_factory=frozenset)
    entitlement_key: Optional[str] = None
    open: bool = False

    def allows(self, plan: str, features: Iterable[str]) -> bool:
        if self.open:
            return True
        granted = set(features)
        if granted:
            return bool(self.entitlement_key) and self.entitlement_key in granted
        return plan in self.plans


CAPABILITY_RULES: Dict[str, CapabilityRule] = {
    FEATURE_CHAT_SEND: CapabilityRule(FEATURE_CHAT_SEND, open=True),
    FEATURE_MESSAGING_UNLIMITED: CapabilityRule(
        FEATURE_MESSAGING_UNLIMITED, plans=PAID_PLANS, entitlement_key=FEATURE_MESSAGING_UNLIMITED
    ),
    FEATURE_CHAT_MEDIA: CapabilityRule(FEATURE_CHAT_MEDIA, plans=PAID_PLANS, entitlement_key=FEATURE_CHAT_MEDIA),
    FEATURE_CONTACTS_VIEW: CapabilityRule(
        FEATURE_CONTACTS_VIEW, plans=PAID_PLANS, entitlement_key=FEATURE_CONTACTS_VIEW
    ),
    FEATURE_WHATSAPP_HANDOFF: CapabilityRule(
        FEATURE_WHATSAPP_HANDOFF, plans=PAID_PLANS, entitlement_key=FEATURE_WHATSAPP_HANDOFF
    ),
}

PREMIUM_CAPABILITIES = frozenset(
    {FEATURE_MESSAGING_UNLIMITED, FEATURE_CHAT_MEDIA, FEATURE_CONTACTS_VIEW, FEATURE_WHATSAPP_HANDOFF}
)


def normalize_plan(plan_key: Optional[str]) -> str:
    value = str(plan_key or "").strip().lower()
    return value if value in PLAN_KEYS else PLAN_FREE


def get_capability_rule(feature: str) -> Optional[CapabilityRule]:
    return CAPABILITY_RULES.get(feature)


def plan_features(plan_key: str) -> FrozenSet[str]:
    return PLAN_FEATURES.get(normalize_plan(plan_key), frozenset())


def unlimited_feature_for(usage_feature: str) -> Optional[str]:
    return USAGE_UNLIMITED_FEATURES.get(usage_feature)
