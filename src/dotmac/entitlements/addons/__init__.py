"""
Add-on catalog, installations and entitlement verdicts.
"""

from dotmac.entitlements.addons.entitlement import (
    AddonEntitlementResolver,
    EntitlementState,
    EntitlementVerdict,
    GracePolicy,
    ReasonCode,
    apply_grace_policy,
    evaluate_installation,
)
from dotmac.entitlements.addons.models import (
    AddonCountryConfig,
    AddonDefinition,
    AddonInstallation,
    AddonLifecycle,
    InstallationStatus,
    ProviderSubscriptionStatus,
)

__all__ = [
    "AddonCountryConfig",
    "AddonDefinition",
    "AddonEntitlementResolver",
    "AddonInstallation",
    "AddonLifecycle",
    "EntitlementState",
    "EntitlementVerdict",
    "GracePolicy",
    "InstallationStatus",
    "ProviderSubscriptionStatus",
    "ReasonCode",
    "apply_grace_policy",
    "evaluate_installation",
]
