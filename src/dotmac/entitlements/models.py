"""
Import every ORM model so ``Base.metadata`` knows all tables.
"""

from dotmac.entitlements.addons.models import (
    AddonCountryConfig,
    AddonDefinition,
    AddonInstallation,
)
from dotmac.entitlements.audit.models import AuditActivity
from dotmac.entitlements.db import Base
from dotmac.entitlements.features.models import FeatureFlag, TenantFeatureOverride
from dotmac.entitlements.plans.models import Plan, PlanBillingCycle
from dotmac.entitlements.pricing.models import BillingOffer
from dotmac.entitlements.subscriptions.models import Payment, Subscription
from dotmac.entitlements.webhooks.models import WebhookEvent

__all__ = [
    "Base",
    "AddonCountryConfig",
    "AddonDefinition",
    "AddonInstallation",
    "AuditActivity",
    "BillingOffer",
    "FeatureFlag",
    "Payment",
    "Plan",
    "PlanBillingCycle",
    "Subscription",
    "TenantFeatureOverride",
    "WebhookEvent",
]
