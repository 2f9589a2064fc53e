"""
Tests for tenant feature resolution and its cache.
"""

import pytest
import pytest_asyncio

from conftest import TENANT_ID
from dotmac.entitlements.features.limits import UNLIMITED, get_limits
from dotmac.entitlements.features.models import FeatureFlag, TenantFeatureOverride
from dotmac.entitlements.features.service import (
    FeatureSource,
    compute_feature_set,
    feature_cache_key,
)
from dotmac.entitlements.plans.models import PlanTier


def _flag(code: str, **kwargs) -> FeatureFlag:
    return FeatureFlag(code=code, name=code.title(), **kwargs)


@pytest_asyncio.fixture
async def feature_catalog(db_session):
    db_session.add_all(
        [
            _flag("dashboard", is_global=True),
            _flag("invoicing", min_tier="starter"),
            _flag("analytics", min_tier="pro"),
            _flag("sso", min_tier="enterprise"),
            _flag("beta_reports", default_enabled=False),
        ]
    )
    await db_session.commit()


@pytest.mark.unit
class TestComputeFeatureSet:
    """The pure combination step."""

    def test_tier_defaults(self):
        flags = [_flag("invoicing", min_tier="starter"), _flag("analytics", min_tier="pro")]

        result = compute_feature_set("t1", PlanTier.STARTER, flags, [])

        assert result.is_enabled("invoicing")
        assert not result.is_enabled("analytics")
        assert result.features["invoicing"].source == FeatureSource.TIER_DEFAULT

    def test_global_flags_cannot_be_overridden_off(self):
        flags = [_flag("dashboard", is_global=True)]
        overrides = [TenantFeatureOverride(tenant_id="t1", feature_code="dashboard", enabled=False)]

        result = compute_feature_set("t1", PlanTier.FREE, flags, overrides)

        assert result.is_enabled("dashboard")
        assert result.features["dashboard"].source == FeatureSource.GLOBAL

    def test_overrides_beat_tier_defaults(self):
        flags = [_flag("analytics", min_tier="pro"), _flag("invoicing", min_tier="starter")]
        overrides = [
            TenantFeatureOverride(
                tenant_id="t1", feature_code="analytics", enabled=True, config={"seats": 3}
            ),
            TenantFeatureOverride(tenant_id="t1", feature_code="invoicing", enabled=False),
        ]

        result = compute_feature_set("t1", PlanTier.STARTER, flags, overrides)

        assert result.is_enabled("analytics")
        assert result.features["analytics"].config == {"seats": 3}
        assert not result.is_enabled("invoicing")
        assert result.features["invoicing"].source == FeatureSource.TENANT_OVERRIDE

    def test_overrides_without_catalog_entry_still_apply(self):
        overrides = [
            TenantFeatureOverride(tenant_id="t1", feature_code="early_access", enabled=True)
        ]

        result = compute_feature_set("t1", PlanTier.FREE, [], overrides)

        assert result.enabled_codes == {"early_access"}

    def test_feature_default_without_tier(self):
        result = compute_feature_set(
            "t1", PlanTier.ENTERPRISE, [_flag("beta_reports", default_enabled=False)], []
        )

        assert not result.is_enabled("beta_reports")
        assert result.features["beta_reports"].source == FeatureSource.FEATURE_DEFAULT


@pytest.mark.unit
class TestTierLimits:
    def test_limits_grow_with_tier(self):
        assert get_limits("free").max_users == 1
        assert get_limits(PlanTier.PRO).max_customers == 500
        assert get_limits("enterprise").max_users == UNLIMITED

    def test_allows(self):
        starter = get_limits("starter")

        assert starter.allows("max_users", 4)
        assert not starter.allows("max_users", 5)
        assert get_limits("enterprise").allows("max_users", 10_000)


@pytest.mark.integration
class TestFeatureResolver:
    async def test_tenant_without_subscription_is_free(self, features, feature_catalog):
        result = await features.resolve(TENANT_ID)

        assert result.tier == PlanTier.FREE
        assert result.enabled_codes == {"dashboard"}

    async def test_tier_follows_active_subscription(
        self, manager, features, feature_catalog, plans, ctx
    ):
        await manager.select_plan(ctx, plans["starter"].code)
        pending = await features.resolve(TENANT_ID)
        # Never-activated pending subscriptions grant nothing beyond free
        assert pending.tier == PlanTier.FREE

        payment = await manager.get_pending_payment(ctx)
        await manager.verify_payment(ctx, payment.id, "pay_1")

        result = await features.resolve(TENANT_ID)
        assert result.tier == PlanTier.STARTER
        assert result.is_enabled("invoicing")
        assert not result.is_enabled("analytics")
        assert (await features.get_limits(TENANT_ID)).max_users == 5

    async def test_cached_until_ttl_expires(
        self, db_session, features, feature_catalog, cache_timer
    ):
        assert not await features.is_enabled(TENANT_ID, "beta_reports")

        # Written behind the resolver's back: the cached set is still served
        db_session.add(
            TenantFeatureOverride(tenant_id=TENANT_ID, feature_code="beta_reports", enabled=True)
        )
        await db_session.commit()
        assert not await features.is_enabled(TENANT_ID, "beta_reports")

        cache_timer.advance(61)
        assert await features.is_enabled(TENANT_ID, "beta_reports")

    async def test_set_override_invalidates_immediately(self, features, feature_catalog, cache):
        assert not await features.is_enabled(TENANT_ID, "analytics")

        await features.set_override(
            TENANT_ID, "analytics", True, reason="pilot", updated_by="support"
        )

        assert await features.is_enabled(TENANT_ID, "analytics")
        assert await cache.exists(feature_cache_key(TENANT_ID))

    async def test_set_override_replaces_existing(self, db_session, features, feature_catalog):
        await features.set_override(TENANT_ID, "analytics", True)
        override = await features.set_override(TENANT_ID, "analytics", False)

        assert override.enabled is False
        assert not await features.is_enabled(TENANT_ID, "analytics")

    async def test_clear_override(self, features, feature_catalog):
        await features.set_override(TENANT_ID, "analytics", True)

        assert await features.clear_override(TENANT_ID, "analytics") is True
        assert not await features.is_enabled(TENANT_ID, "analytics")
        assert await features.clear_override(TENANT_ID, "analytics") is False

    async def test_tenants_are_resolved_independently(self, features, feature_catalog):
        await features.set_override("tenant-other", "sso", True)

        assert await features.is_enabled("tenant-other", "sso")
        assert not await features.is_enabled(TENANT_ID, "sso")
