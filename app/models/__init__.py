from .user import User
from .subscription_plan import SubscriptionPlan
from .subscription import (
    Subscription, SUBSCRIPTION_STATUSES, ACTIVE_STATUSES, LIVE_STATUSES, TERMINAL_STATUSES,
)
from .subscription_event import SubscriptionEvent
from .billing_event import BillingEventLog

__all__ = [
    "User",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionEvent",
    "BillingEventLog",
    "SUBSCRIPTION_STATUSES",
    "ACTIVE_STATUSES",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
]
