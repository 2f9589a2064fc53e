"""
Plan catalog service.

Read model over plans and their billing cycles, plus the selection rules every
plan change has to pass.
"""

from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.countries import normalize_country_code, plan_matches_country
from dotmac.entitlements.exceptions import (
    BillingCycleNotAvailableError,
    PlanArchivedError,
    PlanCountryMismatchError,
    PlanNotFoundError,
    PlanNotPublicError,
)
from dotmac.entitlements.plans.models import BillingCycle, Plan, PlanBillingCycle, PlanTier

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """Lookup and validation of pricing plans."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, plan_id: str) -> Plan | None:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Plan | None:
        result = await self.db.execute(select(Plan).where(Plan.code == code))
        return result.scalar_one_or_none()

    async def require_active(
        self, *, plan_id: str | None = None, plan_code: str | None = None
    ) -> Plan:
        """Return an active plan or raise PLAN_NOT_FOUND."""
        plan = None
        if plan_id:
            plan = await self.get_by_id(plan_id)
        elif plan_code:
            plan = await self.get_by_code(plan_code)

        if plan is None or not plan.is_active:
            raise PlanNotFoundError("Plan not found", plan_id=plan_id, plan_code=plan_code)
        return plan

    async def list_public_plans(self, country_code: str) -> list[Plan]:
        """Public, active, non-archived plans sold in ``country_code``."""
        country = normalize_country_code(country_code)
        stmt = (
            select(Plan)
            .where(Plan.is_active.is_(True), Plan.is_public.is_(True), Plan.is_archived.is_(False))
            .order_by(Plan.sort_order, Plan.base_price)
        )
        result = await self.db.execute(stmt)
        return [
            plan
            for plan in result.scalars().all()
            if plan_matches_country(plan.region, country)
        ]

    @staticmethod
    def validate_selectable(plan: Plan, tenant_country: str) -> None:
        """Archived, non-public and foreign plans can never be newly selected."""
        if plan.is_archived:
            raise PlanArchivedError(plan.code)
        if not plan.is_public:
            raise PlanNotPublicError(plan.code)
        ensure_country_match(plan, tenant_country)

    @staticmethod
    def resolve_checkout_amount(plan: Plan, cycle: BillingCycle | str) -> Decimal:
        """Cycle price when that cycle is enabled and priced, else the base price."""
        entry = plan.get_cycle(cycle)
        if entry is not None and entry.enabled and entry.price is not None:
            return Decimal(entry.price)
        return Decimal(plan.base_price)

    @staticmethod
    def require_cycle_price(plan: Plan, cycle: BillingCycle | str) -> Decimal:
        """Price of an enabled cycle; quotes refuse disabled cycles."""
        entry = plan.get_cycle(cycle)
        if entry is None or not entry.enabled or entry.price is None:
            raise BillingCycleNotAvailableError(plan.code, BillingCycle(cycle).value)
        return Decimal(entry.price)

    async def create_plan(
        self,
        *,
        code: str,
        name: str,
        tier: PlanTier | str,
        base_price: Decimal | int | str,
        currency: str,
        country_code: str | None = None,
        cycles: dict[str, Any] | None = None,
        is_public: bool = True,
        is_active: bool = True,
        is_archived: bool = False,
        sort_order: int = 0,
        local_prices: dict[str, Any] | None = None,
    ) -> Plan:
        """
        Add a plan to the catalog.

        ``cycles`` maps a billing cycle to its price; a ``None`` price keeps
        the cycle listed but disabled.
        """
        plan = Plan(
            code=code,
            name=name,
            tier=PlanTier(tier).value,
            base_price=Decimal(str(base_price)),
            currency=currency,
            country_code=normalize_country_code(country_code) if country_code else None,
            local_prices=local_prices or {},
            is_public=is_public,
            is_active=is_active,
            is_archived=is_archived,
            sort_order=sort_order,
            billing_cycles=[
                PlanBillingCycle(
                    cycle=BillingCycle(cycle).value,
                    price=Decimal(str(price)) if price is not None else None,
                    enabled=price is not None,
                )
                for cycle, price in (cycles or {}).items()
            ],
        )
        self.db.add(plan)
        await self.db.flush()
        logger.info("plan.created", plan_code=code, tier=plan.tier, country=plan.country_code)
        return plan


def ensure_country_match(plan: Plan, tenant_country: str) -> None:
    """Raise PLAN_COUNTRY_MISMATCH unless the plan is sold in the tenant's country."""
    if not plan_matches_country(plan.region, tenant_country):
        raise PlanCountryMismatchError(
            plan.code, plan.region, normalize_country_code(tenant_country)
        )
