"""
Permission checks against the request context.
"""

from typing import Protocol

from dotmac.entitlements.context import RequestContext

WILDCARD = "*"
SUBSCRIPTION_CHANGE = "subscription.change"

DEFAULT_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "owner": frozenset({WILDCARD}),
    "admin": frozenset({WILDCARD}),
}


class PermissionChecker(Protocol):
    """Maps a caller to whether it holds a permission."""

    async def has_permission(self, ctx: RequestContext, permission: str) -> bool: ...


def permission_matches(granted: str, required: str) -> bool:
    """``*`` grants everything, ``billing.*`` grants every ``billing.`` permission."""
    if granted == WILDCARD or granted == required:
        return True
    if granted.endswith(".*"):
        return required.startswith(granted[:-1])
    return False


class ContextPermissionChecker:
    """Checks the context's permission list plus permissions implied by its roles."""

    def __init__(self, role_permissions: dict[str, frozenset[str]] | None = None):
        self.role_permissions = (
            DEFAULT_ROLE_PERMISSIONS if role_permissions is None else role_permissions
        )

    def granted_permissions(self, ctx: RequestContext) -> set[str]:
        granted = set(ctx.permissions)
        for role in ctx.roles:
            granted.update(self.role_permissions.get(role, ()))
        return granted

    async def has_permission(self, ctx: RequestContext, permission: str) -> bool:
        return any(permission_matches(g, permission) for g in self.granted_permissions(ctx))
