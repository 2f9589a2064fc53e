"""
Price quotes.

Quotes are pure reads: they never touch subscriptions or payments and are
safe to serve without authentication.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog
from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.countries import normalize_country_code
from dotmac.entitlements.db import as_utc, utc_now
from dotmac.entitlements.exceptions import InvalidCouponError
from dotmac.entitlements.plans.models import BillingCycle
from dotmac.entitlements.plans.service import PlanCatalog
from dotmac.entitlements.pricing.models import BillingOffer, OfferType
from dotmac.entitlements.settings import TaxRule

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class AppliedOffer(BaseModel):
    id: str
    name: str
    type: OfferType
    value: Decimal
    discount: Decimal


class AppliedCoupon(BaseModel):
    code: str
    discount: Decimal


class QuoteResult(BaseModel):
    plan_code: str
    plan_name: str
    billing_cycle: BillingCycle
    country_code: str
    currency: str
    base_price: Decimal
    subtotal: Decimal
    offer_discount: Decimal
    coupon_discount: Decimal
    discount: Decimal
    tax_name: str | None = None
    tax_rate: Decimal
    tax_inclusive: bool = False
    tax: Decimal
    total: Decimal
    effective_price_per_month: Decimal
    amount_minor: int
    applied_offer: AppliedOffer | None = None
    applied_coupon: AppliedCoupon | None = None


def calculate_discount(offer: BillingOffer, subtotal: Decimal) -> Decimal:
    """PERCENT takes a rounded share; FLAT never exceeds the subtotal."""
    value = Decimal(offer.value)
    if offer.offer_type == OfferType.PERCENT.value:
        return money(subtotal * value / 100)
    return min(value, subtotal)


def calculate_tax(amount: Decimal, rule: TaxRule | None) -> Decimal:
    """Tax contained in (inclusive) or added to (exclusive) ``amount``."""
    if rule is None or rule.rate <= 0:
        return Decimal("0.00")
    rate = Decimal(str(rule.rate))
    if rule.inclusive:
        return money(amount - amount / (1 + rate / 100))
    return money(amount * rate / 100)


def offer_is_live(offer: BillingOffer, now: datetime) -> bool:
    if not offer.is_active or offer.is_exhausted:
        return False
    valid_from = as_utc(offer.valid_from)
    valid_to = as_utc(offer.valid_to)
    if valid_from is not None and valid_from > now:
        return False
    return valid_to is None or valid_to >= now


class QuoteService:
    """Computes plan quotes with offers, coupons and tax."""

    def __init__(
        self,
        db: AsyncSession,
        tax_rules: dict[str, TaxRule],
        default_country: str = "IN",
    ):
        self.db = db
        self.catalog = PlanCatalog(db)
        self.tax_rules = {normalize_country_code(code): rule for code, rule in tax_rules.items()}
        self.default_country = default_country

    async def quote(
        self,
        plan_code: str,
        billing_cycle: BillingCycle | str,
        *,
        country_code: str | None = None,
        coupon_code: str | None = None,
        tenant_id: str | None = None,
    ) -> QuoteResult:
        plan = await self.catalog.require_active(plan_code=plan_code)
        cycle = BillingCycle(billing_cycle)
        subtotal = PlanCatalog.require_cycle_price(plan, cycle)
        country = normalize_country_code(country_code or plan.region or self.default_country)
        now = utc_now()

        applied_offer = None
        offer_discount = Decimal("0")
        # Automatic offers are only for identified tenants
        if tenant_id:
            best = await self._best_auto_offer(plan.code, cycle, country, subtotal, now)
            if best is not None:
                offer_discount = calculate_discount(best, subtotal)
                applied_offer = AppliedOffer(
                    id=best.id,
                    name=best.name,
                    type=OfferType(best.offer_type),
                    value=Decimal(best.value),
                    discount=offer_discount,
                )

        applied_coupon = None
        coupon_discount = Decimal("0")
        if coupon_code:
            coupon = await self._validate_coupon(coupon_code, plan.code, cycle, country, now)
            coupon_discount = calculate_discount(coupon, subtotal - offer_discount)
            applied_coupon = AppliedCoupon(code=coupon_code.upper(), discount=coupon_discount)

        discount = offer_discount + coupon_discount
        total = max(Decimal("0"), subtotal - discount)

        rule = self.tax_rules.get(country)
        tax = calculate_tax(total, rule)
        payable = total if (rule is None or rule.inclusive) else total + tax

        result = QuoteResult(
            plan_code=plan.code,
            plan_name=plan.name,
            billing_cycle=cycle,
            country_code=country,
            currency=plan.currency,
            base_price=money(Decimal(plan.base_price)),
            subtotal=money(subtotal),
            offer_discount=money(offer_discount),
            coupon_discount=money(coupon_discount),
            discount=money(discount),
            tax_name=rule.name if rule else None,
            tax_rate=Decimal(str(rule.rate)) if rule else Decimal("0"),
            tax_inclusive=bool(rule and rule.inclusive),
            tax=tax,
            total=money(payable),
            effective_price_per_month=money(payable / cycle.months),
            amount_minor=int((payable * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            applied_offer=applied_offer,
            applied_coupon=applied_coupon,
        )
        logger.debug(
            "quote.calculated",
            plan_code=plan.code,
            cycle=cycle.value,
            country=country,
            total=str(result.total),
        )
        return result

    async def _best_auto_offer(
        self,
        plan_code: str,
        cycle: BillingCycle,
        country: str,
        subtotal: Decimal,
        now: datetime,
    ) -> BillingOffer | None:
        stmt = select(BillingOffer).where(
            BillingOffer.coupon_code.is_(None),
            BillingOffer.is_active.is_(True),
            or_(BillingOffer.country_code.is_(None), BillingOffer.country_code == country),
            or_(BillingOffer.plan_code.is_(None), BillingOffer.plan_code == plan_code),
            or_(BillingOffer.billing_cycle.is_(None), BillingOffer.billing_cycle == cycle.value),
        )
        offers = [o for o in (await self.db.execute(stmt)).scalars().all() if offer_is_live(o, now)]
        best: BillingOffer | None = None
        best_discount = Decimal("0")
        for offer in offers:
            discount = calculate_discount(offer, subtotal)
            if discount > best_discount:
                best, best_discount = offer, discount
        return best

    async def _validate_coupon(
        self,
        coupon_code: str,
        plan_code: str,
        cycle: BillingCycle,
        country: str,
        now: datetime,
    ) -> BillingOffer:
        result = await self.db.execute(
            select(BillingOffer).where(func.lower(BillingOffer.coupon_code) == coupon_code.lower())
        )
        coupon = result.scalar_one_or_none()
        if coupon is None or not coupon.is_active:
            raise InvalidCouponError("Invalid or expired coupon code", coupon_code)
        if coupon.is_exhausted:
            raise InvalidCouponError("Offer redemption limit reached", coupon_code)
        if not offer_is_live(coupon, now):
            raise InvalidCouponError("Invalid or expired coupon code", coupon_code)
        if coupon.country_code and normalize_country_code(coupon.country_code) != country:
            raise InvalidCouponError("Coupon not valid for your region", coupon_code)
        if coupon.plan_code and coupon.plan_code != plan_code:
            raise InvalidCouponError("Coupon not valid for this plan", coupon_code)
        if coupon.billing_cycle and coupon.billing_cycle != cycle.value:
            raise InvalidCouponError(
                f"Coupon only valid for {coupon.billing_cycle} billing", coupon_code
            )
        return coupon
