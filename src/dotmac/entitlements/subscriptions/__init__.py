"""
Subscription lifecycle: plan selection, checkout, plan changes and cancellation.
"""

from dotmac.entitlements.subscriptions.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from dotmac.entitlements.subscriptions.service import (
    PlanChangeAction,
    SubscriptionLifecycleManager,
)

__all__ = [
    "Payment",
    "PaymentStatus",
    "PlanChangeAction",
    "Subscription",
    "SubscriptionLifecycleManager",
    "SubscriptionStatus",
]
