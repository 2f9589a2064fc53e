"""
Tenant feature resolution and tier limits.
"""

from dotmac.entitlements.features.limits import UNLIMITED, TierLimits, get_limits
from dotmac.entitlements.features.models import FeatureFlag, TenantFeatureOverride
from dotmac.entitlements.features.service import (
    FeatureResolver,
    FeatureSource,
    FeatureState,
    TenantFeatureSet,
    compute_feature_set,
)

__all__ = [
    "UNLIMITED",
    "FeatureFlag",
    "FeatureResolver",
    "FeatureSource",
    "FeatureState",
    "TenantFeatureOverride",
    "TenantFeatureSet",
    "TierLimits",
    "compute_feature_set",
    "get_limits",
]
