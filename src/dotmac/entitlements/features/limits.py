"""Usage limits per plan tier. -1 means unlimited."""

from pydantic import BaseModel

from dotmac.entitlements.plans.models import PlanTier

UNLIMITED = -1


class TierLimits(BaseModel):
    max_users: int
    max_customers: int
    api_rate_limit: int

    def allows(self, limit_name: str, current_usage: int) -> bool:
        """True while ``current_usage`` is below the named limit."""
        limit = getattr(self, limit_name)
        return limit == UNLIMITED or current_usage < limit


TIER_LIMITS: dict[PlanTier, TierLimits] = {
    PlanTier.FREE: TierLimits(max_users=1, max_customers=25, api_rate_limit=100),
    PlanTier.STARTER: TierLimits(max_users=5, max_customers=100, api_rate_limit=1000),
    PlanTier.PRO: TierLimits(max_users=25, max_customers=500, api_rate_limit=10000),
    PlanTier.ENTERPRISE: TierLimits(
        max_users=UNLIMITED, max_customers=UNLIMITED, api_rate_limit=UNLIMITED
    ),
}


def get_limits(tier: PlanTier | str) -> TierLimits:
    return TIER_LIMITS[PlanTier(tier)]
