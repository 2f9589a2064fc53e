"""
Feature resolution.

Effective features for a tenant are global flags, plus tier defaults the
tenant's tier qualifies for, plus enable overrides, minus disable overrides.
Global flags can never be overridden off. Results are cached per tenant in the
injected :class:`CacheBackend` and invalidated on every plan change.
"""

from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.cache import CacheBackend
from dotmac.entitlements.db import transaction
from dotmac.entitlements.features.limits import TierLimits, get_limits
from dotmac.entitlements.features.models import FeatureFlag, TenantFeatureOverride
from dotmac.entitlements.plans.models import Plan, PlanTier
from dotmac.entitlements.subscriptions.models import Subscription

logger = structlog.get_logger(__name__)

DEFAULT_FEATURE_TTL = 60


class FeatureSource(str, Enum):
    """Why a feature ended up enabled or disabled."""

    GLOBAL = "global"
    TIER_DEFAULT = "tier_default"
    TENANT_OVERRIDE = "tenant_override"
    FEATURE_DEFAULT = "feature_default"


class FeatureState(BaseModel):
    enabled: bool
    source: FeatureSource
    config: dict[str, Any] | None = None


class TenantFeatureSet(BaseModel):
    """Resolved feature matrix for one tenant."""

    tenant_id: str
    tier: PlanTier
    features: dict[str, FeatureState] = Field(default_factory=dict)

    def is_enabled(self, feature_code: str) -> bool:
        state = self.features.get(feature_code)
        return bool(state and state.enabled)

    @property
    def enabled_codes(self) -> set[str]:
        return {code for code, state in self.features.items() if state.enabled}


def feature_cache_key(tenant_id: str) -> str:
    return f"features:{tenant_id}"


def compute_feature_set(
    tenant_id: str,
    tier: PlanTier,
    flags: list[FeatureFlag],
    overrides: list[TenantFeatureOverride],
) -> TenantFeatureSet:
    """Pure combination step, separated from I/O for testing."""
    by_code = {override.feature_code: override for override in overrides}
    features: dict[str, FeatureState] = {}

    for flag in flags:
        override = by_code.pop(flag.code, None)
        if flag.is_global:
            features[flag.code] = FeatureState(enabled=True, source=FeatureSource.GLOBAL)
        elif override is not None:
            features[flag.code] = FeatureState(
                enabled=override.enabled,
                source=FeatureSource.TENANT_OVERRIDE,
                config=override.config,
            )
        elif flag.min_tier:
            features[flag.code] = FeatureState(
                enabled=tier.rank >= PlanTier(flag.min_tier).rank,
                source=FeatureSource.TIER_DEFAULT,
            )
        else:
            features[flag.code] = FeatureState(
                enabled=flag.default_enabled, source=FeatureSource.FEATURE_DEFAULT
            )

    # Overrides for codes without a catalog entry still apply
    for code, override in by_code.items():
        features[code] = FeatureState(
            enabled=override.enabled,
            source=FeatureSource.TENANT_OVERRIDE,
            config=override.config,
        )

    return TenantFeatureSet(tenant_id=tenant_id, tier=tier, features=features)


class FeatureResolver:
    """Computes and caches the effective feature set per tenant."""

    def __init__(self, db: AsyncSession, cache: CacheBackend, ttl: int = DEFAULT_FEATURE_TTL):
        self.db = db
        self.cache = cache
        self.ttl = ttl

    async def resolve(self, tenant_id: str) -> TenantFeatureSet:
        key = feature_cache_key(tenant_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return TenantFeatureSet.model_validate(cached)

        tier = await self.get_tenant_tier(tenant_id)
        flags = list((await self.db.execute(select(FeatureFlag))).scalars().all())
        overrides = list(
            (
                await self.db.execute(
                    select(TenantFeatureOverride).where(
                        TenantFeatureOverride.tenant_id == tenant_id
                    )
                )
            )
            .scalars()
            .all()
        )

        feature_set = compute_feature_set(tenant_id, tier, flags, overrides)
        await self.cache.set(key, feature_set.model_dump(mode="json"), ttl=self.ttl)
        logger.debug("features.resolved", tenant_id=tenant_id, tier=tier.value)
        return feature_set

    async def is_enabled(self, tenant_id: str, feature_code: str) -> bool:
        return (await self.resolve(tenant_id)).is_enabled(feature_code)

    async def get_tenant_tier(self, tenant_id: str) -> PlanTier:
        """Tier of the plan the tenant is currently entitled to; free otherwise."""
        result = await self.db.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )
        subscription = result.scalar_one_or_none()
        plan_id = subscription.live_plan_id if subscription else None
        if plan_id is None:
            return PlanTier.FREE
        tier = (
            await self.db.execute(select(Plan.tier).where(Plan.id == plan_id))
        ).scalar_one_or_none()
        return PlanTier(tier) if tier else PlanTier.FREE

    async def get_limits(self, tenant_id: str) -> TierLimits:
        return get_limits(await self.get_tenant_tier(tenant_id))

    async def invalidate(self, tenant_id: str) -> None:
        """Drop the cached set so the next read sees the committed state."""
        await self.cache.delete(feature_cache_key(tenant_id))
        logger.info("features.cache_invalidated", tenant_id=tenant_id)

    async def set_override(
        self,
        tenant_id: str,
        feature_code: str,
        enabled: bool,
        *,
        config: dict[str, Any] | None = None,
        reason: str | None = None,
        updated_by: str | None = None,
    ) -> TenantFeatureOverride:
        """Create or replace a tenant override and invalidate the tenant's cache."""
        async with transaction(self.db):
            result = await self.db.execute(
                select(TenantFeatureOverride).where(
                    TenantFeatureOverride.tenant_id == tenant_id,
                    TenantFeatureOverride.feature_code == feature_code,
                )
            )
            override = result.scalar_one_or_none()
            if override is None:
                override = TenantFeatureOverride(tenant_id=tenant_id, feature_code=feature_code)
                self.db.add(override)
            override.enabled = enabled
            override.config = config
            override.reason = reason
            override.updated_by = updated_by

        await self.invalidate(tenant_id)
        logger.info(
            "features.override_set", tenant_id=tenant_id, feature=feature_code, enabled=enabled
        )
        return override

    async def clear_override(self, tenant_id: str, feature_code: str) -> bool:
        async with transaction(self.db):
            result = await self.db.execute(
                select(TenantFeatureOverride).where(
                    TenantFeatureOverride.tenant_id == tenant_id,
                    TenantFeatureOverride.feature_code == feature_code,
                )
            )
            override = result.scalar_one_or_none()
            if override is not None:
                await self.db.delete(override)

        await self.invalidate(tenant_id)
        return override is not None
