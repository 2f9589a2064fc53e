"""
Plan catalog tables and enums.
"""

from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dotmac.entitlements.countries import infer_plan_country
from dotmac.entitlements.db import Base, TimestampMixin


class PlanTier(str, Enum):
    """Feature-eligibility rank of a plan."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]


TIER_RANK: dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.STARTER: 1,
    PlanTier.PRO: 2,
    PlanTier.ENTERPRISE: 3,
}


class BillingCycle(str, Enum):
    """Recurrence period of a plan price."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return CYCLE_MONTHS[self]


CYCLE_MONTHS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.HALF_YEARLY: 6,
    BillingCycle.YEARLY: 12,
}


def new_id() -> str:
    return str(uuid4())


class Plan(Base, TimestampMixin):
    """Pricing plan. Codes encode a country prefix and a tier."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default=PlanTier.FREE.value)

    base_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    country_code: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    local_prices: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    billing_cycles: Mapped[list["PlanBillingCycle"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (Index("ix_plans_listing", "is_active", "is_public", "is_archived"),)

    @property
    def tier_enum(self) -> PlanTier:
        return PlanTier(self.tier)

    @property
    def is_free(self) -> bool:
        return self.tier == PlanTier.FREE.value or Decimal(self.base_price or 0) == 0

    @property
    def region(self) -> str | None:
        """Explicit country wins; the code prefix is only a fallback for legacy rows."""
        return self.country_code or infer_plan_country(self.code)

    def get_cycle(self, cycle: BillingCycle | str) -> "PlanBillingCycle | None":
        value = BillingCycle(cycle).value
        for entry in self.billing_cycles:
            if entry.cycle == value:
                return entry
        return None

    def enabled_cycles(self) -> list["PlanBillingCycle"]:
        return [entry for entry in self.billing_cycles if entry.enabled]

    def __repr__(self) -> str:
        return f"<Plan(code={self.code!r}, tier={self.tier!r})>"


class PlanBillingCycle(Base, TimestampMixin):
    """Price of a plan for one billing cycle."""

    __tablename__ = "plan_billing_cycles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    plan: Mapped[Plan] = relationship(back_populates="billing_cycles")

    __table_args__ = (UniqueConstraint("plan_id", "cycle", name="uq_plan_billing_cycle"),)

    @property
    def months(self) -> int:
        return BillingCycle(self.cycle).months
