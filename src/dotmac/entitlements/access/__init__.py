"""
Access gate: permission, feature and add-on checks for protected routes.
"""

from dotmac.entitlements.access.denial import (
    ACCESS_DENIED_ADDON,
    ACCESS_DENIED_FEATURE,
    DenialAuditSink,
)
from dotmac.entitlements.access.gate import AccessDecision, AccessGate, AccessRequirement
from dotmac.entitlements.access.permissions import (
    SUBSCRIPTION_CHANGE,
    ContextPermissionChecker,
    PermissionChecker,
    permission_matches,
)

__all__ = [
    "ACCESS_DENIED_ADDON",
    "ACCESS_DENIED_FEATURE",
    "AccessDecision",
    "AccessGate",
    "AccessRequirement",
    "ContextPermissionChecker",
    "DenialAuditSink",
    "PermissionChecker",
    "SUBSCRIPTION_CHANGE",
    "permission_matches",
]
