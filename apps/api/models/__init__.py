"""Models package."""

from .user import User
from .subscription import Subscription
from .entitlement_grant import EntitlementGrant
from .capability_ledger import CapabilityLedgerEntry
from .usage_counter import UsageCounter
from .message import Message
