"""
DotMac Entitlements - tenant subscription lifecycle and entitlement engine.

Provides:
- Plan catalog with country-scoped pricing per billing cycle
- Feature resolution from plan tier, global flags and tenant overrides
- Add-on entitlement verdicts with trial, grace and dependency handling
- Subscription lifecycle with gateway checkout, upgrades and scheduled downgrades
- Idempotent payment provider webhooks
- A composable access gate for protecting routes
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get package version."""
    return __version__


__all__ = ["__version__", "get_version"]
