"""
Tests for plan quotes: cycle pricing, offers, coupons and tax.
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from freezegun import freeze_time
from sqlalchemy import func, select

from conftest import TENANT_ID
from dotmac.entitlements.exceptions import (
    BillingCycleNotAvailableError,
    InvalidCouponError,
    PlanNotFoundError,
)
from dotmac.entitlements.pricing.models import BillingOffer, OfferType
from dotmac.entitlements.pricing.quote import QuoteService, calculate_discount, calculate_tax
from dotmac.entitlements.settings import TaxRule
from dotmac.entitlements.subscriptions.models import Payment, Subscription

GST = TaxRule(name="GST", rate=18.0)
UK_VAT = TaxRule(name="VAT", rate=20.0, inclusive=True)


def _offer(name: str, offer_type: OfferType, value: str, **kwargs) -> BillingOffer:
    return BillingOffer(name=name, offer_type=offer_type.value, value=Decimal(value), **kwargs)


@pytest_asyncio.fixture
async def quotes(db_session, plans) -> QuoteService:
    return QuoteService(db_session, tax_rules={"IN": GST, "GB": UK_VAT}, default_country="IN")


@pytest.mark.unit
class TestArithmetic:
    def test_percent_discount_is_rounded(self):
        offer = _offer("Launch", OfferType.PERCENT, "12.5")

        assert calculate_discount(offer, Decimal("999")) == Decimal("124.88")

    def test_flat_discount_is_capped_at_subtotal(self):
        offer = _offer("Credit", OfferType.FLAT, "5000")

        assert calculate_discount(offer, Decimal("999")) == Decimal("999")

    def test_exclusive_tax_is_added(self):
        assert calculate_tax(Decimal("999"), GST) == Decimal("179.82")

    def test_inclusive_tax_is_extracted(self):
        assert calculate_tax(Decimal("49"), UK_VAT) == Decimal("8.17")

    def test_no_rule_means_no_tax(self):
        assert calculate_tax(Decimal("39"), None) == Decimal("0.00")
        assert calculate_tax(Decimal("39"), TaxRule(name="Sales Tax", rate=0.0)) == Decimal("0.00")


@pytest.mark.integration
class TestQuote:
    async def test_exclusive_gst(self, quotes):
        result = await quotes.quote("india_starter", "monthly")

        assert result.country_code == "IN"
        assert result.subtotal == Decimal("999.00")
        assert result.tax_name == "GST"
        assert result.tax == Decimal("179.82")
        assert result.total == Decimal("1178.82")
        assert result.amount_minor == 117882
        assert result.applied_offer is None

    async def test_inclusive_vat_keeps_total(self, quotes):
        result = await quotes.quote("uk_pro", "monthly")

        assert result.country_code == "UK"
        assert result.tax_inclusive is True
        assert result.tax == Decimal("8.17")
        assert result.total == Decimal("49.00")
        assert result.currency == "GBP"

    async def test_cycle_price_and_monthly_equivalent(self, quotes):
        result = await quotes.quote("india_starter", "quarterly")

        assert result.subtotal == Decimal("2700.00")
        assert result.base_price == Decimal("999.00")
        assert result.total == Decimal("3186.00")
        assert result.effective_price_per_month == Decimal("1062.00")

    async def test_country_without_rule_is_untaxed(self, quotes):
        result = await quotes.quote("global_pro", "monthly", country_code="DE")

        assert result.tax == Decimal("0.00")
        assert result.tax_name is None
        assert result.total == Decimal("39.00")

    async def test_disabled_cycle_is_refused(self, quotes):
        with pytest.raises(BillingCycleNotAvailableError):
            await quotes.quote("india_starter", "half_yearly")

    async def test_unknown_plan(self, quotes):
        with pytest.raises(PlanNotFoundError):
            await quotes.quote("india_platinum", "monthly")

    async def test_quote_writes_nothing(self, db_session, quotes):
        await quotes.quote("india_pro", "yearly", tenant_id=TENANT_ID)

        for model in (Subscription, Payment):
            count = await db_session.execute(select(func.count()).select_from(model))
            assert count.scalar_one() == 0


@pytest.mark.integration
class TestCoupons:
    @pytest_asyncio.fixture
    async def coupons(self, db_session):
        db_session.add_all(
            [
                _offer("Ten off", OfferType.PERCENT, "10", coupon_code="SAVE10"),
                _offer("Big credit", OfferType.FLAT, "5000", coupon_code="CREDIT5K"),
                _offer("UK only", OfferType.PERCENT, "20", coupon_code="UK20", country_code="GB"),
                _offer(
                    "Pro only",
                    OfferType.PERCENT,
                    "15",
                    coupon_code="PRO15",
                    plan_code="india_pro",
                ),
                _offer(
                    "Yearly only",
                    OfferType.PERCENT,
                    "25",
                    coupon_code="YEAR25",
                    billing_cycle="yearly",
                ),
                _offer(
                    "Used up",
                    OfferType.PERCENT,
                    "50",
                    coupon_code="GONE",
                    max_redemptions=5,
                    redemption_count=5,
                ),
                _offer("Paused", OfferType.PERCENT, "30", coupon_code="PAUSED", is_active=False),
                _offer(
                    "March promo",
                    OfferType.PERCENT,
                    "10",
                    coupon_code="MARCH",
                    valid_from=datetime(2026, 3, 1, tzinfo=UTC),
                    valid_to=datetime(2026, 3, 31, 23, 59, tzinfo=UTC),
                ),
            ]
        )
        await db_session.commit()

    async def test_percent_coupon_before_tax(self, quotes, coupons):
        result = await quotes.quote("india_starter", "monthly", coupon_code="save10")

        assert result.coupon_discount == Decimal("99.90")
        assert result.applied_coupon.code == "SAVE10"
        assert result.tax == Decimal("161.84")
        assert result.total == Decimal("1060.94")

    async def test_flat_coupon_cannot_go_negative(self, quotes, coupons):
        result = await quotes.quote("india_starter", "monthly", coupon_code="CREDIT5K")

        assert result.coupon_discount == Decimal("999.00")
        assert result.total == Decimal("0.00")
        assert result.amount_minor == 0

    @pytest.mark.parametrize(
        ("plan_code", "cycle", "coupon_code", "message"),
        [
            ("india_starter", "monthly", "NOPE", "Invalid or expired coupon code"),
            ("india_starter", "monthly", "PAUSED", "Invalid or expired coupon code"),
            ("india_starter", "monthly", "GONE", "Offer redemption limit reached"),
            ("india_starter", "monthly", "UK20", "Coupon not valid for your region"),
            ("india_starter", "monthly", "PRO15", "Coupon not valid for this plan"),
            ("india_starter", "monthly", "YEAR25", "Coupon only valid for yearly billing"),
        ],
    )
    async def test_rejected_coupons(self, quotes, coupons, plan_code, cycle, coupon_code, message):
        with pytest.raises(InvalidCouponError) as exc_info:
            await quotes.quote(plan_code, cycle, coupon_code=coupon_code)

        assert exc_info.value.message == message
        assert exc_info.value.error_code == "INVALID_COUPON"

    async def test_region_coupon_accepts_alias(self, quotes, coupons):
        result = await quotes.quote("uk_pro", "monthly", coupon_code="UK20")

        assert result.coupon_discount == Decimal("9.80")

    async def test_coupon_validity_window(self, quotes, coupons):
        with freeze_time("2026-03-15 12:00:00"):
            result = await quotes.quote("india_starter", "monthly", coupon_code="MARCH")
        assert result.coupon_discount == Decimal("99.90")

        with freeze_time("2026-04-02 12:00:00"):
            with pytest.raises(InvalidCouponError, match="Invalid or expired"):
                await quotes.quote("india_starter", "monthly", coupon_code="MARCH")

        with freeze_time("2026-02-20 12:00:00"):
            with pytest.raises(InvalidCouponError):
                await quotes.quote("india_starter", "monthly", coupon_code="MARCH")


@pytest.mark.integration
class TestAutomaticOffers:
    @pytest_asyncio.fixture
    async def offers(self, db_session):
        db_session.add_all(
            [
                _offer("Ten percent", OfferType.PERCENT, "10"),
                _offer("Starter credit", OfferType.FLAT, "150", plan_code="india_starter"),
                _offer("UK spring", OfferType.PERCENT, "40", country_code="UK"),
                _offer("Yearly", OfferType.PERCENT, "30", billing_cycle="yearly"),
            ]
        )
        await db_session.commit()

    async def test_anonymous_quotes_get_no_offer(self, quotes, offers):
        result = await quotes.quote("india_starter", "monthly")

        assert result.applied_offer is None
        assert result.discount == Decimal("0.00")

    async def test_largest_discount_wins(self, quotes, offers):
        result = await quotes.quote("india_starter", "monthly", tenant_id=TENANT_ID)

        assert result.applied_offer.name == "Starter credit"
        assert result.offer_discount == Decimal("150.00")
        assert result.total == Decimal("1001.82")

    async def test_scoped_offers_only_apply_in_scope(self, quotes, offers):
        result = await quotes.quote("india_pro", "monthly", tenant_id=TENANT_ID)

        assert result.applied_offer.name == "Ten percent"
        assert result.offer_discount == Decimal("249.90")

    async def test_coupon_stacks_on_offer(self, db_session, quotes, offers):
        db_session.add(_offer("Ten off", OfferType.PERCENT, "10", coupon_code="SAVE10"))
        await db_session.commit()

        result = await quotes.quote(
            "india_starter", "monthly", coupon_code="SAVE10", tenant_id=TENANT_ID
        )

        assert result.offer_discount == Decimal("150.00")
        assert result.coupon_discount == Decimal("84.90")
        assert result.discount == Decimal("234.90")
