"""
Request and response schemas for the billing API.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dotmac.entitlements.addons.entitlement import EntitlementState, ReasonCode
from dotmac.entitlements.features.service import FeatureSource
from dotmac.entitlements.plans.models import BillingCycle, Plan
from dotmac.entitlements.subscriptions.models import Payment, Subscription
from dotmac.entitlements.subscriptions.service import PlanChangeAction

# ============================================================================
# Requests
# ============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class SelectPlanRequest(_Request):
    plan_code: str = Field(..., min_length=1, description="Code of the plan to select")


class StartCheckoutRequest(_Request):
    plan_id: str = Field(..., min_length=1, description="Plan to pay for")
    cycle: BillingCycle = Field(BillingCycle.MONTHLY, description="Billing cycle")


class VerifyPaymentRequest(_Request):
    payment_id: str = Field(..., min_length=1)
    provider_payment_id: str | None = Field(None, description="Provider payment id from checkout")
    provider_signature: str | None = Field(None, description="Provider checkout signature")


class ChangeSubscriptionRequest(_Request):
    plan_id: str = Field(..., min_length=1)
    action: PlanChangeAction
    billing_cycle: BillingCycle | None = None


class CancelSubscriptionRequest(_Request):
    at_period_end: bool = Field(True, description="Keep access until the paid period ends")


class QuoteRequest(_Request):
    plan_code: str = Field(..., min_length=1)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    coupon_code: str | None = None
    country_code: str | None = None
    tenant_id: str | None = Field(None, description="Enables automatic offers for the tenant")


# ============================================================================
# Responses
# ============================================================================


class BillingCycleResponse(BaseModel):
    cycle: BillingCycle
    price: Decimal | None
    months: int


class PlanResponse(BaseModel):
    id: str
    code: str
    name: str
    description: str | None = None
    tier: str
    base_price: Decimal
    currency: str
    country_code: str | None = None
    is_free: bool
    billing_cycles: list[BillingCycleResponse] = Field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            code=plan.code,
            name=plan.name,
            description=plan.description,
            tier=plan.tier,
            base_price=plan.base_price,
            currency=plan.currency,
            country_code=plan.region,
            is_free=plan.is_free,
            billing_cycles=[
                BillingCycleResponse(
                    cycle=BillingCycle(entry.cycle), price=entry.price, months=entry.months
                )
                for entry in plan.enabled_cycles()
            ],
        )


class PaymentResponse(BaseModel):
    id: str
    plan_id: str
    status: str
    amount: Decimal
    currency: str
    provider: str
    provider_order_id: str | None = None
    billing_cycle: str | None = None
    paid_at: datetime | None = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            plan_id=payment.plan_id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            provider=payment.provider,
            provider_order_id=payment.provider_order_id,
            billing_cycle=(payment.metadata_json or {}).get("billing_cycle"),
            paid_at=payment.paid_at,
        )


class SubscriptionDetail(BaseModel):
    id: str
    plan_id: str
    status: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    pending_plan_id: str | None = None
    pending_billing_cycle: str | None = None
    downgrade_plan_id: str | None = None
    downgrade_effective_at: datetime | None = None
    cancel_at_period_end: bool
    last_payment_at: datetime | None = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionDetail":
        return cls(
            id=subscription.id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            pending_plan_id=subscription.pending_plan_id,
            pending_billing_cycle=subscription.pending_billing_cycle,
            downgrade_plan_id=subscription.downgrade_plan_id,
            downgrade_effective_at=subscription.downgrade_effective_at,
            cancel_at_period_end=subscription.cancel_at_period_end,
            last_payment_at=subscription.last_payment_at,
        )


class SubscriptionResponse(BaseModel):
    status: str
    subscription: SubscriptionDetail | None = None
    plan: PlanResponse | None = None
    pending_payment: PaymentResponse | None = None
    downgrade_plan: PlanResponse | None = None


class SelectPlanResponse(BaseModel):
    requires_tenant_setup: bool = False
    pending_plan_code: str | None = None
    requires_payment: bool = False
    subscription: SubscriptionDetail | None = None
    plan: PlanResponse | None = None
    payment: PaymentResponse | None = None


class CheckoutResponse(BaseModel):
    payment: PaymentResponse
    subscription: SubscriptionDetail
    checkout: dict[str, Any] | None = None


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    activated: bool
    already_processed: bool = False
    payment: PaymentResponse
    subscription: SubscriptionDetail | None = None


class ChangeSubscriptionResponse(BaseModel):
    success: bool = True
    changed: bool = True
    subscription: SubscriptionDetail | None = None
    payment: PaymentResponse | None = None


class FeatureStateResponse(BaseModel):
    enabled: bool
    source: FeatureSource
    config: dict[str, Any] | None = None


class FeaturesResponse(BaseModel):
    tenant_id: str
    tier: str
    features: dict[str, FeatureStateResponse]


class EntitlementResponse(BaseModel):
    addon: str
    entitled: bool
    state: EntitlementState
    reason_code: ReasonCode
    message: str
    valid_until: datetime | None = None
    days_remaining: int | None = None
    dependency: str | None = None
    upgrade_url: str | None = None
