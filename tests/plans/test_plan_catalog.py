"""
Tests for the plan catalog: country filtering, selection rules and cycle pricing.
"""

from decimal import Decimal

import pytest

from dotmac.entitlements.countries import (
    infer_plan_country,
    normalize_country_code,
    plan_matches_country,
)
from dotmac.entitlements.exceptions import (
    BillingCycleNotAvailableError,
    PlanArchivedError,
    PlanCountryMismatchError,
    PlanNotFoundError,
    PlanNotPublicError,
)
from dotmac.entitlements.plans.models import BillingCycle, PlanTier
from dotmac.entitlements.plans.service import PlanCatalog


@pytest.mark.unit
class TestCountryRules:
    def test_gb_is_an_alias_for_uk(self):
        assert normalize_country_code("gb") == "UK"
        assert normalize_country_code(" in ") == "IN"

    def test_plan_country_inferred_from_prefix(self):
        assert infer_plan_country("india_pro") == "IN"
        assert infer_plan_country("uk_starter") == "UK"
        assert infer_plan_country("global_pro") == "GLOBAL"
        assert infer_plan_country("legacy_pro") is None

    def test_global_plans_only_serve_countries_without_a_catalog(self):
        assert plan_matches_country("GLOBAL", "DE")
        assert not plan_matches_country("GLOBAL", "IN")
        assert not plan_matches_country(None, "IN")

    def test_tier_and_cycle_ordering(self):
        assert PlanTier.ENTERPRISE.rank > PlanTier.PRO.rank > PlanTier.STARTER.rank
        assert BillingCycle.HALF_YEARLY.months == 6


@pytest.mark.integration
class TestPlanListing:
    async def test_lists_public_plans_for_country(self, db_session, plans):
        catalog = PlanCatalog(db_session)

        listed = await catalog.list_public_plans("IN")

        assert [plan.code for plan in listed] == ["india_free", "india_starter", "india_pro"]

    async def test_uk_listing_accepts_gb(self, db_session, plans):
        listed = await PlanCatalog(db_session).list_public_plans("GB")

        assert [plan.code for plan in listed] == ["uk_pro"]

    async def test_unknown_country_gets_global_plans(self, db_session, plans):
        listed = await PlanCatalog(db_session).list_public_plans("DE")

        assert [plan.code for plan in listed] == ["global_pro"]

    async def test_explicit_country_wins_over_code_prefix(self, db_session, plans):
        catalog = PlanCatalog(db_session)
        plan = await catalog.create_plan(
            code="india_export",
            name="Export",
            tier="pro",
            base_price=59,
            currency="GBP",
            country_code="GB",
            cycles={"monthly": 59},
        )

        assert plan.country_code == "UK"
        assert plan.region == "UK"


@pytest.mark.integration
class TestSelectionRules:
    async def test_require_active_rejects_unknown_and_inactive(self, db_session, plans):
        catalog = PlanCatalog(db_session)
        await catalog.create_plan(
            code="india_retired",
            name="Retired",
            tier="starter",
            base_price=199,
            currency="INR",
            is_active=False,
        )

        with pytest.raises(PlanNotFoundError) as exc_info:
            await catalog.require_active(plan_code="india_retired")
        assert exc_info.value.status_code == 404

        with pytest.raises(PlanNotFoundError):
            await catalog.require_active(plan_id="missing")

    async def test_archived_plan_is_not_selectable(self, db_session, plans):
        plan = await PlanCatalog(db_session).require_active(plan_code=plans["archived"].code)

        with pytest.raises(PlanArchivedError) as exc_info:
            PlanCatalog.validate_selectable(plan, "IN")
        assert exc_info.value.error_code == "PLAN_ARCHIVED"

    async def test_private_plan_is_not_selectable(self, db_session, plans):
        plan = await PlanCatalog(db_session).require_active(plan_code=plans["private"].code)

        with pytest.raises(PlanNotPublicError):
            PlanCatalog.validate_selectable(plan, "IN")

    async def test_foreign_plan_is_not_selectable(self, db_session, plans):
        plan = await PlanCatalog(db_session).require_active(plan_code=plans["uk_pro"].code)

        with pytest.raises(PlanCountryMismatchError) as exc_info:
            PlanCatalog.validate_selectable(plan, "IN")
        assert exc_info.value.error_code == "PLAN_COUNTRY_MISMATCH"

        PlanCatalog.validate_selectable(plan, "GB")


@pytest.mark.integration
class TestCyclePricing:
    async def test_checkout_amount_uses_enabled_cycle_price(self, db_session, plans):
        plan = await PlanCatalog(db_session).get_by_code("india_starter")

        assert PlanCatalog.resolve_checkout_amount(plan, "quarterly") == Decimal("2700.00")
        assert PlanCatalog.resolve_checkout_amount(plan, BillingCycle.YEARLY) == Decimal("9999.00")

    async def test_checkout_amount_falls_back_to_base_price(self, db_session, plans):
        plan = await PlanCatalog(db_session).get_by_code("india_starter")

        # half_yearly is listed but disabled
        assert PlanCatalog.resolve_checkout_amount(plan, "half_yearly") == Decimal("999.00")

    async def test_quotes_refuse_disabled_cycles(self, db_session, plans):
        plan = await PlanCatalog(db_session).get_by_code("india_starter")

        with pytest.raises(BillingCycleNotAvailableError) as exc_info:
            PlanCatalog.require_cycle_price(plan, "half_yearly")
        assert exc_info.value.error_code == "BILLING_CYCLE_NOT_AVAILABLE"

        assert PlanCatalog.require_cycle_price(plan, "monthly") == Decimal("999.00")

    async def test_enabled_cycles(self, db_session, plans):
        plan = await PlanCatalog(db_session).get_by_code("india_starter")

        assert {entry.cycle for entry in plan.enabled_cycles()} == {
            "monthly",
            "quarterly",
            "yearly",
        }
        assert plan.get_cycle("yearly").months == 12
