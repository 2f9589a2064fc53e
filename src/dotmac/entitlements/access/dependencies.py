"""
Route-level access requirements.

Usage::

    @router.post(
        "/payroll/runs",
        dependencies=[Depends(require_access(permission="payroll.run", addon="payroll",
                                             grace_policy=GracePolicy.DENY_WRITES))],
    )
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Annotated

from fastapi import Depends, Request

from dotmac.entitlements.access.gate import AccessDecision, AccessGate, AccessRequirement
from dotmac.entitlements.addons.entitlement import GracePolicy
from dotmac.entitlements.context import RequestContext, get_request_context
from dotmac.entitlements.dependencies import get_access_gate
from dotmac.entitlements.exceptions import TenantRequiredError


def require_access(
    permission: str | None = None,
    feature: str | None = None,
    addon: str | None = None,
    dependencies: Sequence[str] = (),
    grace_policy: GracePolicy = GracePolicy.ALLOW,
    directory: bool = False,
) -> Callable[..., Awaitable[AccessDecision]]:
    """Build a dependency that admits the request only if every requirement holds."""
    requirement = AccessRequirement(
        permission=permission,
        feature=feature,
        addon=addon,
        dependencies=tuple(dependencies),
        grace_policy=grace_policy,
        directory=directory,
    )

    async def access_dependency(
        request: Request,
        ctx: Annotated[RequestContext, Depends(get_request_context)],
        gate: Annotated[AccessGate, Depends(get_access_gate)],
    ) -> AccessDecision:
        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or request.url.path
        return await gate.check(ctx, requirement, method=request.method, route=route_path)

    return access_dependency


def require_permission(permission: str) -> Callable[..., Awaitable[None]]:
    """Tenant-scoped permission check without feature or add-on requirements."""

    async def permission_dependency(
        ctx: Annotated[RequestContext, Depends(get_request_context)],
        gate: Annotated[AccessGate, Depends(get_access_gate)],
    ) -> None:
        if not ctx.tenant_id:
            raise TenantRequiredError()
        await gate.check_permission(ctx, permission)

    return permission_dependency
