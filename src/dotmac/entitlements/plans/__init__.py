"""
Plan catalog: plans, tiers and per-cycle prices.
"""

from dotmac.entitlements.plans.models import BillingCycle, Plan, PlanBillingCycle, PlanTier
from dotmac.entitlements.plans.service import PlanCatalog, ensure_country_match

__all__ = [
    "BillingCycle",
    "Plan",
    "PlanBillingCycle",
    "PlanCatalog",
    "PlanTier",
    "ensure_country_match",
]
