"""
Access gate in front of business modules.

Checks run in a fixed order and the first failure wins:
tenant, permission, feature, add-on.
"""

from collections.abc import Sequence

import structlog
from pydantic import BaseModel, ConfigDict

from dotmac.entitlements.access.denial import (
    ACCESS_DENIED_ADDON,
    ACCESS_DENIED_FEATURE,
    DenialAuditSink,
)
from dotmac.entitlements.access.permissions import PermissionChecker
from dotmac.entitlements.addons.entitlement import (
    AddonEntitlementResolver,
    EntitlementVerdict,
    GracePolicy,
)
from dotmac.entitlements.context import OperationClass, RequestContext
from dotmac.entitlements.countries import normalize_country_code
from dotmac.entitlements.exceptions import (
    AddonAccessDeniedError,
    CountryScopeViolationError,
    FeatureNotAvailableError,
    PermissionDeniedError,
    UnauthorizedError,
)
from dotmac.entitlements.features.service import FeatureResolver

logger = structlog.get_logger(__name__)


class AccessRequirement(BaseModel):
    """What a protected route needs; unset parts are not checked."""

    model_config = ConfigDict(frozen=True)

    permission: str | None = None
    feature: str | None = None
    addon: str | None = None
    dependencies: tuple[str, ...] = ()
    grace_policy: GracePolicy = GracePolicy.ALLOW
    # Employee directory: payroll or hrms
    directory: bool = False


class AccessDecision(BaseModel):
    tenant_id: str
    addon_verdict: EntitlementVerdict | None = None


class AccessGate:
    """Combines permission, feature and add-on checks for one request."""

    def __init__(
        self,
        features: FeatureResolver,
        addons: AddonEntitlementResolver,
        permissions: PermissionChecker,
        denial_sink: DenialAuditSink | None = None,
        upgrade_url: str = "/marketplace",
    ):
        self.features = features
        self.addons = addons
        self.permissions = permissions
        self.denial_sink = denial_sink
        self.upgrade_url = upgrade_url

    async def check_feature(self, tenant_id: str, feature_code: str) -> bool:
        return await self.features.is_enabled(tenant_id, feature_code)

    async def check_addon(
        self,
        tenant_id: str,
        addon_code: str,
        *,
        dependencies: Sequence[str] = (),
        grace_policy: GracePolicy = GracePolicy.ALLOW,
        operation: OperationClass = OperationClass.READ,
    ) -> EntitlementVerdict:
        return await self.addons.check_addon(
            tenant_id,
            addon_code,
            dependencies=dependencies,
            grace_policy=grace_policy,
            operation=operation,
        )

    async def check(
        self,
        ctx: RequestContext,
        requirement: AccessRequirement,
        method: str = "GET",
        route: str | None = None,
    ) -> AccessDecision:
        """Admit the request or raise the first applicable denial."""
        if not ctx.tenant_id:
            raise UnauthorizedError()
        tenant_id = ctx.tenant_id

        if requirement.permission:
            await self.check_permission(ctx, requirement.permission)

        if requirement.feature and not await self.check_feature(tenant_id, requirement.feature):
            await self._record_denial(
                ctx,
                ACCESS_DENIED_FEATURE,
                route,
                f"Feature {requirement.feature} not available",
                {"feature": requirement.feature},
            )
            raise FeatureNotAvailableError(requirement.feature, upgrade_url=self.upgrade_url)

        verdict = None
        operation = OperationClass.from_method(method)
        if requirement.directory:
            verdict = await self.addons.check_directory(
                tenant_id, grace_policy=requirement.grace_policy, operation=operation
            )
        elif requirement.addon:
            verdict = await self.check_addon(
                tenant_id,
                requirement.addon,
                dependencies=requirement.dependencies,
                grace_policy=requirement.grace_policy,
                operation=operation,
            )

        if verdict is not None and not verdict.entitled:
            await self._record_denial(
                ctx,
                ACCESS_DENIED_ADDON,
                route,
                verdict.message,
                {
                    "addon": verdict.addon,
                    "reason_code": verdict.reason_code.value,
                    "dependency": verdict.dependency,
                    "method": method,
                },
            )
            raise AddonAccessDeniedError(
                verdict.message,
                reason_code=verdict.reason_code.value,
                addon=verdict.addon,
                dependency=verdict.dependency,
                valid_until=verdict.valid_until.isoformat() if verdict.valid_until else None,
                upgrade_url=self.upgrade_url,
            )

        return AccessDecision(tenant_id=tenant_id, addon_verdict=verdict)

    async def check_permission(self, ctx: RequestContext, permission: str) -> None:
        if not await self.permissions.has_permission(ctx, permission):
            logger.warning(
                "access.permission_denied",
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                permission=permission,
            )
            raise PermissionDeniedError(permission)

    async def _record_denial(
        self,
        ctx: RequestContext,
        event: str,
        route: str | None,
        description: str,
        details: dict,
    ) -> None:
        logger.info(
            "access.denied", tenant_id=ctx.tenant_id, denial_event=event, route=route, **details
        )
        if self.denial_sink is None or not ctx.tenant_id:
            return
        await self.denial_sink.record(
            tenant_id=ctx.tenant_id,
            event=event,
            route=route,
            description=description,
            user_id=ctx.user_id,
            details=details,
            ip_address=ctx.ip_address,
            request_id=ctx.request_id,
        )

    @staticmethod
    def ensure_country_scope(ctx: RequestContext, country_code: str) -> None:
        """Administrative callers with a country scope may only act inside it."""
        if ctx.country_scope is None:
            return
        country = normalize_country_code(country_code)
        if country not in ctx.country_scope:
            raise CountryScopeViolationError(country)
