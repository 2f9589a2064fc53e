"""
Tenant subscription and payment tables.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base, StrictTenantMixin, TimestampMixin

NO_SUBSCRIPTION = "no_subscription"
NO_TENANT = "no_tenant"


class SubscriptionStatus(str, Enum):
    """Billing states of a tenant subscription."""

    PENDING_PAYMENT = "pending_payment"
    TRIALING = "trialing"
    ACTIVE = "active"
    DOWNGRADING = "downgrading"
    CANCELLED = "cancelled"


# States from which plan changes and cancellation are allowed
CHANGEABLE_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.DOWNGRADING.value,
    }
)


class PaymentStatus(str, Enum):
    """Payment states. ``paid`` is terminal."""

    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Subscription(Base, TimestampMixin, StrictTenantMixin):
    """One subscription per tenant; rows are upserted, never duplicated."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Set only while a paid plan change is in flight
    pending_plan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    pending_billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pending_payment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    pending_quote_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)

    # Set only while a downgrade is scheduled
    downgrade_plan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    downgrade_billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    downgrade_effective_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Null until the subscription first becomes active, and again after re-subscribing
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_tenant_subscriptions_tenant"),
        Index("ix_tenant_subscriptions_period_sweep", "cancel_at_period_end", "current_period_end"),
    )

    @property
    def has_pending_change(self) -> bool:
        return self.pending_payment_id is not None or self.pending_plan_id is not None

    @property
    def has_scheduled_downgrade(self) -> bool:
        return self.downgrade_plan_id is not None

    @property
    def has_been_activated(self) -> bool:
        """False for a subscription still waiting for its initial payment."""
        return self.activated_at is not None

    @property
    def live_plan_id(self) -> str | None:
        """Plan the tenant is entitled to right now, if any.

        During a paid upgrade the previous plan stays live until capture.
        """
        if self.status in CHANGEABLE_STATUSES:
            return self.plan_id
        if self.status == SubscriptionStatus.PENDING_PAYMENT.value and self.has_been_activated:
            return self.plan_id
        return None

    def clear_pending(self) -> None:
        self.pending_plan_id = None
        self.pending_billing_cycle = None
        self.pending_payment_id = None
        self.pending_quote_amount = None

    def clear_downgrade(self) -> None:
        self.downgrade_plan_id = None
        self.downgrade_billing_cycle = None
        self.downgrade_effective_at = None

    def __repr__(self) -> str:
        return f"<Subscription(tenant_id={self.tenant_id!r}, status={self.status!r})>"


class Payment(Base, TimestampMixin, StrictTenantMixin):
    """Payment attempt for a plan activation or change. Rows are never deleted."""

    __tablename__ = "subscription_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenant_subscriptions.id"), nullable=False, index=True
    )
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.CREATED.value, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    provider_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    @property
    def amount_minor(self) -> int:
        """Amount in the currency's minor unit (paise, pence, fils)."""
        return int((Decimal(self.amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def __repr__(self) -> str:
        return f"<Payment(id={self.id!r}, status={self.status!r})>"
