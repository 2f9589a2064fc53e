"""
Subscription lifecycle management.

The manager is the only writer of subscription and payment rows. Every public
operation runs in one transaction and invalidates the tenant's feature cache
after it commits, so the next feature read sees the new plan.

State machine::

    no_subscription -> active (free) | pending_payment
    pending_payment -> active (capture) | previous state (cancel)
    active | trialing -> pending_payment (paid upgrade) | downgrading
    downgrading -> active (cancel downgrade or period end)
    active | trialing | downgrading -> cancelled
"""

import calendar
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.audit import ActivitySeverity, ActivityType, AuditService, AuditSink
from dotmac.entitlements.context import RequestContext
from dotmac.entitlements.db import as_utc, transaction, utc_now
from dotmac.entitlements.exceptions import (
    InvalidDowngradeError,
    InvalidPaymentStateError,
    InvalidUpgradeError,
    NoOrderError,
    NoPendingDowngradeError,
    NoPendingPaymentError,
    NoSubscriptionError,
    PaymentAlreadyCapturedError,
    PaymentMismatchError,
    PaymentNotFoundError,
    PaymentVerificationError,
    SignatureRequiredError,
    SubscriptionExistsError,
    SubscriptionStateError,
    TenantRequiredError,
    ValidationError,
)
from dotmac.entitlements.payments.gateway import PaymentGateway
from dotmac.entitlements.plans.models import BillingCycle, Plan, new_id
from dotmac.entitlements.plans.service import PlanCatalog
from dotmac.entitlements.pricing.quote import QuoteResult, QuoteService
from dotmac.entitlements.settings import Settings, get_settings
from dotmac.entitlements.subscriptions.models import (
    CHANGEABLE_STATUSES,
    NO_SUBSCRIPTION,
    NO_TENANT,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)

if TYPE_CHECKING:  # pragma: no cover - type checking only
    # features.service reads subscription rows, so this import is one-way at runtime
    from dotmac.entitlements.features.service import FeatureResolver

logger = structlog.get_logger(__name__)

USER_CANCELLED_UPGRADE = "USER_CANCELLED_UPGRADE"


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PlanChangeAction(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


# ========================================
# Operation results
# ========================================


@dataclass
class SubscriptionSnapshot:
    """Current subscription, or a sentinel status when there is none."""

    status: str
    subscription: Subscription | None = None
    plan: Plan | None = None
    pending_payment: Payment | None = None
    downgrade_plan: Plan | None = None


@dataclass
class SelectPlanResult:
    requires_tenant_setup: bool = False
    pending_plan_code: str | None = None
    subscription: Subscription | None = None
    plan: Plan | None = None
    payment: Payment | None = None

    @property
    def requires_payment(self) -> bool:
        return self.payment is not None


@dataclass
class CheckoutResult:
    payment: Payment
    subscription: Subscription
    checkout: dict[str, Any] | None = None


@dataclass
class VerifyResult:
    payment: Payment
    subscription: Subscription | None
    activated: bool
    already_processed: bool = False


@dataclass
class ChangeResult:
    subscription: Subscription
    payment: Payment | None = None
    changed: bool = True


class SubscriptionLifecycleManager:
    """Drives tenant subscriptions through their billing states."""

    def __init__(
        self,
        db: AsyncSession,
        features: "FeatureResolver",
        gateway: PaymentGateway,
        audit: AuditSink | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.features = features
        self.gateway = gateway
        self.audit = audit or AuditService(db)
        self.config = config or get_settings()
        self.catalog = PlanCatalog(db)
        self.clock = clock

    # ========================================
    # Helpers
    # ========================================

    @staticmethod
    def _require_tenant(ctx: RequestContext) -> str:
        if not ctx.tenant_id:
            raise TenantRequiredError()
        return ctx.tenant_id

    def _tenant_country(self, ctx: RequestContext) -> str:
        return ctx.country_code or self.config.billing.default_country

    async def _get_subscription(self, tenant_id: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def _get_payment(self, tenant_id: str, payment_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment).where(Payment.id == payment_id, Payment.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def _pending_payment(self, subscription: Subscription | None) -> Payment | None:
        if subscription is None or not subscription.pending_payment_id:
            return None
        return await self._get_payment(subscription.tenant_id, subscription.pending_payment_id)

    async def _cancel_stale_payment(self, subscription: Subscription | None, reason: str) -> None:
        payment = await self._pending_payment(subscription)
        if payment is not None and payment.status == PaymentStatus.CREATED.value:
            payment.status = PaymentStatus.CANCELLED.value
            payment.metadata_json = {
                **(payment.metadata_json or {}),
                "cancelled_at": self.clock().isoformat(),
                "cancel_reason": reason,
            }
            logger.info("payment.superseded", payment_id=payment.id, reason=reason)

    def _release_failed_payment(
        self, subscription: Subscription | None, payment: Payment
    ) -> None:
        """Detach a failed payment; an activated subscription goes back to its live plan."""
        if subscription is None or subscription.pending_payment_id != payment.id:
            return
        subscription.clear_pending()
        if subscription.has_been_activated:
            subscription.status = SubscriptionStatus.ACTIVE.value

    def _free_period_end(self, start: datetime) -> datetime:
        return add_months(start, 12 * self.config.billing.free_plan_years)

    def _new_payment(
        self,
        tenant_id: str,
        subscription: Subscription,
        plan: Plan,
        cycle: BillingCycle,
        **metadata: Any,
    ) -> Payment:
        payment = Payment(
            id=new_id(),
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            plan_id=plan.id,
            provider=self.gateway.name,
            status=PaymentStatus.CREATED.value,
            amount=PlanCatalog.resolve_checkout_amount(plan, cycle),
            currency=plan.currency,
            metadata_json={"billing_cycle": cycle.value, **metadata},
        )
        self.db.add(payment)
        return payment

    async def _upsert_pending(
        self,
        tenant_id: str,
        subscription: Subscription | None,
        plan: Plan,
        cycle: BillingCycle,
        now: datetime,
    ) -> Subscription:
        """Create or move the subscription into pending_payment for ``plan``."""
        if subscription is None:
            subscription = Subscription(
                id=new_id(),
                tenant_id=tenant_id,
                plan_id=plan.id,
                billing_cycle=cycle.value,
                current_period_start=now,
                current_period_end=add_months(now, self.config.billing.pending_period_months),
            )
            self.db.add(subscription)
        elif subscription.live_plan_id is None:
            # Nothing live to keep: the target becomes the provisional plan
            subscription.plan_id = plan.id
            subscription.billing_cycle = cycle.value
            subscription.activated_at = None
            subscription.current_period_start = now
            subscription.current_period_end = add_months(
                now, self.config.billing.pending_period_months
            )

        subscription.status = SubscriptionStatus.PENDING_PAYMENT.value
        subscription.clear_downgrade()
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = None
        return subscription

    def _activate(
        self,
        subscription: Subscription,
        plan: Plan,
        cycle: BillingCycle,
        now: datetime,
    ) -> None:
        subscription.plan_id = plan.id
        subscription.billing_cycle = cycle.value
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_start = now
        subscription.current_period_end = (
            self._free_period_end(now) if plan.is_free else add_months(now, cycle.months)
        )
        subscription.clear_pending()
        subscription.clear_downgrade()
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = None
        subscription.activated_at = now

    async def _activate_free(
        self, tenant_id: str, subscription: Subscription | None, plan: Plan, now: datetime
    ) -> Subscription:
        if subscription is None:
            subscription = Subscription(id=new_id(), tenant_id=tenant_id, plan_id=plan.id)
            self.db.add(subscription)
        self._activate(subscription, plan, BillingCycle.MONTHLY, now)
        return subscription

    async def _audit(
        self,
        ctx: RequestContext | None,
        tenant_id: str,
        activity_type: ActivityType,
        description: str,
        subscription: Subscription,
        severity: ActivitySeverity = ActivitySeverity.MEDIUM,
        **details: Any,
    ) -> None:
        await self.audit.log_activity(
            activity_type,
            action=activity_type.value,
            description=description,
            tenant_id=tenant_id,
            user_id=ctx.user_id if ctx else None,
            resource_type="subscription",
            resource_id=subscription.id,
            severity=severity,
            details=details or None,
            ip_address=ctx.ip_address if ctx else None,
            request_id=ctx.request_id if ctx else None,
        )

    # ========================================
    # Reads
    # ========================================

    async def get_subscription(self, ctx: RequestContext) -> SubscriptionSnapshot:
        """Subscription with plan and pending payment; sentinel statuses never raise."""
        if not ctx.tenant_id:
            return SubscriptionSnapshot(status=NO_TENANT)

        subscription = await self._get_subscription(ctx.tenant_id)
        if subscription is None:
            return SubscriptionSnapshot(status=NO_SUBSCRIPTION)

        plan = await self.catalog.get_by_id(subscription.plan_id)
        pending = await self._pending_payment(subscription)
        downgrade_plan = (
            await self.catalog.get_by_id(subscription.downgrade_plan_id)
            if subscription.downgrade_plan_id
            else None
        )
        return SubscriptionSnapshot(
            status=subscription.status,
            subscription=subscription,
            plan=plan,
            pending_payment=pending
            if pending is not None and pending.status == PaymentStatus.CREATED.value
            else None,
            downgrade_plan=downgrade_plan,
        )

    async def get_pending_payment(self, ctx: RequestContext) -> Payment | None:
        if not ctx.tenant_id:
            return None
        payment = await self._pending_payment(await self._get_subscription(ctx.tenant_id))
        if payment is None or payment.status != PaymentStatus.CREATED.value:
            return None
        return payment

    async def quote(
        self,
        plan_code: str,
        billing_cycle: BillingCycle | str,
        *,
        country_code: str | None = None,
        coupon_code: str | None = None,
        tenant_id: str | None = None,
    ) -> QuoteResult:
        """Pure price computation; never mutates state."""
        service = QuoteService(
            self.db,
            tax_rules=self.config.billing.tax_rules,
            default_country=self.config.billing.default_country,
        )
        return await service.quote(
            plan_code,
            billing_cycle,
            country_code=country_code,
            coupon_code=coupon_code,
            tenant_id=tenant_id,
        )

    # ========================================
    # Plan selection and checkout
    # ========================================

    async def select_plan(self, ctx: RequestContext, plan_code: str) -> SelectPlanResult:
        """
        Pick a plan for a tenant without an active subscription.

        Free plans activate immediately. Priced plans put the subscription in
        pending_payment with a fresh payment, reusing an open payment for the
        same plan.
        """
        if not ctx.tenant_id:
            return SelectPlanResult(requires_tenant_setup=True, pending_plan_code=plan_code)
        tenant_id = ctx.tenant_id

        async with transaction(self.db):
            plan = await self.catalog.require_active(plan_code=plan_code)
            self.catalog.validate_selectable(plan, self._tenant_country(ctx))

            subscription = await self._get_subscription(tenant_id)
            if subscription is not None and subscription.status in (
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.TRIALING.value,
            ):
                raise SubscriptionExistsError(subscription.status)

            now = self.clock()
            if plan.is_free:
                await self._cancel_stale_payment(subscription, "PLAN_SELECTED")
                subscription = await self._activate_free(tenant_id, subscription, plan, now)
                await self._audit(
                    ctx,
                    tenant_id,
                    ActivityType.SUBSCRIPTION_ACTIVATED,
                    f"Free plan {plan.code} activated",
                    subscription,
                    plan_id=plan.id,
                )
                payment = None
            else:
                existing = await self._pending_payment(subscription)
                if (
                    subscription is not None
                    and subscription.status == SubscriptionStatus.PENDING_PAYMENT.value
                    and existing is not None
                    and existing.status == PaymentStatus.CREATED.value
                    and existing.plan_id == plan.id
                ):
                    return SelectPlanResult(subscription=subscription, plan=plan, payment=existing)

                await self._cancel_stale_payment(subscription, "PLAN_SELECTED")
                subscription = await self._upsert_pending(
                    tenant_id, subscription, plan, BillingCycle.MONTHLY, now
                )
                payment = self._new_payment(
                    tenant_id, subscription, plan, BillingCycle.MONTHLY, source="select_plan"
                )
                self._set_pending(subscription, plan, BillingCycle.MONTHLY, payment)
                await self._audit(
                    ctx,
                    tenant_id,
                    ActivityType.PLAN_SELECTED,
                    f"Plan {plan.code} selected, awaiting payment",
                    subscription,
                    plan_id=plan.id,
                    payment_id=payment.id,
                )

        await self.features.invalidate(tenant_id)
        logger.info(
            "subscription.plan_selected",
            tenant_id=tenant_id,
            plan_code=plan.code,
            requires_payment=payment is not None,
        )
        return SelectPlanResult(subscription=subscription, plan=plan, payment=payment)

    @staticmethod
    def _set_pending(
        subscription: Subscription, plan: Plan, cycle: BillingCycle, payment: Payment
    ) -> None:
        subscription.pending_plan_id = plan.id
        subscription.pending_billing_cycle = cycle.value
        subscription.pending_payment_id = payment.id
        subscription.pending_quote_amount = Decimal(payment.amount)

    async def start_checkout(
        self, ctx: RequestContext, plan_id: str, cycle: BillingCycle | str
    ) -> CheckoutResult:
        """Open a payment for ``plan_id`` on ``cycle`` and mark the subscription pending."""
        tenant_id = self._require_tenant(ctx)
        billing_cycle = BillingCycle(cycle)

        async with transaction(self.db):
            plan = await self.catalog.require_active(plan_id=plan_id)
            self.catalog.validate_selectable(plan, self._tenant_country(ctx))

            subscription = await self._get_subscription(tenant_id)
            now = self.clock()
            await self._cancel_stale_payment(subscription, "CHECKOUT_RESTARTED")
            subscription = await self._upsert_pending(
                tenant_id, subscription, plan, billing_cycle, now
            )
            payment = self._new_payment(
                tenant_id, subscription, plan, billing_cycle, source="checkout"
            )
            self._set_pending(subscription, plan, billing_cycle, payment)
            await self._audit(
                ctx,
                tenant_id,
                ActivityType.CHECKOUT_STARTED,
                f"Checkout started for {plan.code} ({billing_cycle.value})",
                subscription,
                plan_id=plan.id,
                payment_id=payment.id,
                amount=str(payment.amount),
            )

        await self.features.invalidate(tenant_id)
        logger.info(
            "subscription.checkout_started",
            tenant_id=tenant_id,
            plan_id=plan.id,
            cycle=billing_cycle.value,
            payment_id=payment.id,
        )
        return CheckoutResult(payment=payment, subscription=subscription)

    async def create_checkout(self, ctx: RequestContext) -> CheckoutResult:
        """Create (or replay) the provider order for the pending payment."""
        tenant_id = self._require_tenant(ctx)

        async with transaction(self.db):
            subscription = await self._get_subscription(tenant_id)
            payment = await self._pending_payment(subscription)
            if (
                subscription is None
                or payment is None
                or payment.status != PaymentStatus.CREATED.value
            ):
                raise NoPendingPaymentError()

            stored = (payment.metadata_json or {}).get("checkout")
            if payment.provider_order_id and stored:
                logger.info("checkout.replayed", payment_id=payment.id)
                return CheckoutResult(payment=payment, subscription=subscription, checkout=stored)

            order = await self.gateway.create_order(
                amount_minor=payment.amount_minor,
                currency=payment.currency,
                receipt=f"rcpt_{payment.id}",
                notes={
                    "tenant_id": tenant_id,
                    "payment_id": payment.id,
                    "plan_id": payment.plan_id,
                },
            )
            checkout = {**order.checkout_payload, "payment_id": payment.id}
            payment.provider_order_id = order.order_id
            payment.metadata_json = {**(payment.metadata_json or {}), "checkout": checkout}

        logger.info("checkout.order_created", payment_id=payment.id, order_id=order.order_id)
        return CheckoutResult(payment=payment, subscription=subscription, checkout=checkout)

    # ========================================
    # Verification and capture
    # ========================================

    async def verify_payment(
        self,
        ctx: RequestContext,
        payment_id: str,
        provider_payment_id: str | None,
        signature: str | None = None,
    ) -> VerifyResult:
        """
        Verify a completed checkout and activate the paid plan.

        Re-verifying a paid payment succeeds without side effects.
        """
        tenant_id = self._require_tenant(ctx)
        failure: PaymentVerificationError | None = None
        activated = False

        async with transaction(self.db):
            payment = await self._get_payment(tenant_id, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)

            subscription = await self._get_subscription(tenant_id)
            if payment.status == PaymentStatus.PAID.value:
                return VerifyResult(
                    payment=payment,
                    subscription=subscription,
                    activated=False,
                    already_processed=True,
                )
            if payment.status != PaymentStatus.CREATED.value:
                raise InvalidPaymentStateError(payment.id, payment.status)

            if (
                subscription is None
                or subscription.status != SubscriptionStatus.PENDING_PAYMENT.value
                or (
                    subscription.pending_payment_id
                    and subscription.pending_payment_id != payment.id
                )
            ):
                raise PaymentMismatchError(
                    payment.id, subscription.status if subscription else None
                )

            if not self.gateway.is_mock and not signature:
                raise SignatureRequiredError()
            if not payment.provider_order_id and not self.gateway.is_mock:
                raise NoOrderError(payment.id)

            verified = self.gateway.is_mock or self.gateway.verify_payment_signature(
                payment.provider_order_id or "", provider_payment_id or "", signature
            )
            if not verified:
                payment.status = PaymentStatus.FAILED.value
                payment.error_message = "Signature verification failed"
                self._release_failed_payment(subscription, payment)
                await self._audit(
                    ctx,
                    tenant_id,
                    ActivityType.PAYMENT_FAILED,
                    "Payment signature verification failed",
                    subscription,
                    severity=ActivitySeverity.HIGH,
                    payment_id=payment.id,
                )
                failure = PaymentVerificationError(payment.id, "invalid signature")
            else:
                activated = await self._capture_payment(
                    payment, subscription, provider_payment_id, signature, ctx
                )

        if failure is not None:
            await self.features.invalidate(tenant_id)
            logger.warning(
                "payment.verification_failed", tenant_id=tenant_id, payment_id=payment_id
            )
            raise failure

        if activated:
            await self.features.invalidate(tenant_id)
        return VerifyResult(payment=payment, subscription=subscription, activated=activated)

    async def _capture_payment(
        self,
        payment: Payment,
        subscription: Subscription,
        provider_payment_id: str | None,
        signature: str | None,
        ctx: RequestContext | None = None,
    ) -> bool:
        """
        Mark the payment paid and apply its plan.

        The conditional update only succeeds from ``created``; a concurrent
        verifier that already captured leaves nothing to do here.
        """
        now = self.clock()
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.CREATED.value)
            .values(
                status=PaymentStatus.PAID.value,
                provider_payment_id=provider_payment_id,
                provider_signature=signature,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            logger.info("payment.already_captured", payment_id=payment.id)
            return False

        plan_id = subscription.pending_plan_id or payment.plan_id
        cycle = BillingCycle(
            subscription.pending_billing_cycle
            or (payment.metadata_json or {}).get("billing_cycle")
            or subscription.billing_cycle
        )
        plan = await self.catalog.get_by_id(plan_id)
        if plan is None:
            raise PaymentMismatchError(payment.id, subscription.status)

        self._activate(subscription, plan, cycle, now)
        subscription.last_payment_at = now

        await self._audit(
            ctx,
            subscription.tenant_id,
            ActivityType.SUBSCRIPTION_ACTIVATED,
            f"Subscription activated on {plan.code}",
            subscription,
            plan_id=plan.id,
            payment_id=payment.id,
            billing_cycle=cycle.value,
        )
        logger.info(
            "subscription.activated",
            tenant_id=subscription.tenant_id,
            plan_id=plan.id,
            payment_id=payment.id,
        )
        return True

    async def capture_by_order(self, order_id: str, provider_payment_id: str | None) -> bool:
        """
        Provider-confirmed capture, converging on the interactive path.

        A capture for a payment that can no longer activate (superseded, failed,
        or not the subscription's pending payment) is stored on the payment and
        flagged for reconciliation instead of being dropped.
        """
        tenant_id = None
        activated = False

        async with transaction(self.db):
            result = await self.db.execute(
                select(Payment).where(Payment.provider_order_id == order_id)
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                logger.warning("webhook.payment_not_found", order_id=order_id)
                return False
            if payment.status == PaymentStatus.PAID.value:
                if payment.provider_payment_id != provider_payment_id:
                    await self._record_unmatched_capture(
                        payment, provider_payment_id, "already_paid"
                    )
                return False
            if payment.status != PaymentStatus.CREATED.value:
                await self._record_unmatched_capture(
                    payment, provider_payment_id, f"payment_{payment.status}"
                )
                return False

            tenant_id = payment.tenant_id
            subscription = await self._get_subscription(tenant_id)
            if (
                subscription is None
                or subscription.status != SubscriptionStatus.PENDING_PAYMENT.value
                or subscription.pending_payment_id not in (None, payment.id)
            ):
                await self._record_unmatched_capture(
                    payment, provider_payment_id, "subscription_mismatch"
                )
                return False

            activated = await self._capture_payment(
                payment, subscription, provider_payment_id, None
            )

        if activated and tenant_id:
            await self.features.invalidate(tenant_id)
        return activated

    async def _record_unmatched_capture(
        self, payment: Payment, provider_payment_id: str | None, reason: str
    ) -> None:
        """Keep a trace of money captured against a payment that can no longer activate."""
        if payment.provider_payment_id is None:
            payment.provider_payment_id = provider_payment_id
        payment.metadata_json = {
            **(payment.metadata_json or {}),
            "needs_reconciliation": True,
            "unmatched_capture": {
                "provider_payment_id": provider_payment_id,
                "reason": reason,
                "captured_at": self.clock().isoformat(),
            },
        }
        await self.audit.log_activity(
            ActivityType.PAYMENT_UNMATCHED,
            action=ActivityType.PAYMENT_UNMATCHED.value,
            description=f"Provider captured payment {payment.id} in status {payment.status}",
            tenant_id=payment.tenant_id,
            resource_type="payment",
            resource_id=payment.id,
            severity=ActivitySeverity.HIGH,
            details={"provider_payment_id": provider_payment_id, "reason": reason},
        )
        logger.warning(
            "webhook.capture_unmatched",
            payment_id=payment.id,
            status=payment.status,
            reason=reason,
        )

    async def fail_by_order(self, order_id: str, reason: str | None) -> bool:
        """Provider-reported failure for a still-open payment; releases the pending change."""
        async with transaction(self.db):
            result = await self.db.execute(
                select(Payment).where(Payment.provider_order_id == order_id)
            )
            payment = result.scalar_one_or_none()
            if payment is None or payment.status != PaymentStatus.CREATED.value:
                return False
            payment.status = PaymentStatus.FAILED.value
            payment.error_message = reason or "Payment failed at provider"

            subscription = await self._get_subscription(payment.tenant_id)
            self._release_failed_payment(subscription, payment)
            if subscription is not None:
                await self._audit(
                    None,
                    payment.tenant_id,
                    ActivityType.PAYMENT_FAILED,
                    "Payment failed at provider",
                    subscription,
                    severity=ActivitySeverity.HIGH,
                    payment_id=payment.id,
                    reason=payment.error_message,
                )

        await self.features.invalidate(payment.tenant_id)
        logger.info("payment.failed", payment_id=payment.id, reason=payment.error_message)
        return True

    # ========================================
    # Plan changes
    # ========================================

    async def _require_changeable(self, tenant_id: str, requested: str) -> Subscription:
        subscription = await self._get_subscription(tenant_id)
        if subscription is None:
            raise NoSubscriptionError(tenant_id)
        if subscription.status not in CHANGEABLE_STATUSES:
            raise SubscriptionStateError(
                f"Cannot {requested} a subscription in status {subscription.status}",
                current_state=subscription.status,
                requested_state=requested,
            )
        return subscription

    async def change_subscription(
        self,
        ctx: RequestContext,
        plan_id: str,
        action: PlanChangeAction | str,
        billing_cycle: BillingCycle | str | None = None,
    ) -> ChangeResult:
        """Paid upgrades wait for payment; downgrades apply at period end."""
        tenant_id = self._require_tenant(ctx)
        try:
            change = PlanChangeAction(action)
        except ValueError as e:
            raise ValidationError(f"Unsupported plan change action: {action}", "action") from e

        payment = None
        async with transaction(self.db):
            subscription = await self._require_changeable(tenant_id, change.value)
            target = await self.catalog.require_active(plan_id=plan_id)
            self.catalog.validate_selectable(target, self._tenant_country(ctx))

            current = await self.catalog.get_by_id(subscription.plan_id)
            current_price = Decimal(current.base_price) if current else Decimal("0")
            current_is_free = current.is_free if current else True
            new_price = Decimal(target.base_price)
            cycle = BillingCycle(billing_cycle or subscription.billing_cycle)
            now = self.clock()

            if change == PlanChangeAction.UPGRADE:
                if target.is_free and not current_is_free:
                    self._activate(subscription, target, BillingCycle.MONTHLY, now)
                    await self._audit(
                        ctx,
                        tenant_id,
                        ActivityType.SUBSCRIPTION_ACTIVATED,
                        f"Switched to free plan {target.code}",
                        subscription,
                        plan_id=target.id,
                    )
                elif new_price <= current_price:
                    raise InvalidUpgradeError(current_price, new_price)
                else:
                    payment = self._new_payment(
                        tenant_id,
                        subscription,
                        target,
                        cycle,
                        upgrade_from=subscription.plan_id,
                        upgrade_to=target.id,
                    )
                    subscription.status = SubscriptionStatus.PENDING_PAYMENT.value
                    subscription.clear_downgrade()
                    subscription.cancel_at_period_end = False
                    self._set_pending(subscription, target, cycle, payment)
                    await self._audit(
                        ctx,
                        tenant_id,
                        ActivityType.UPGRADE_REQUESTED,
                        f"Upgrade to {target.code} awaiting payment",
                        subscription,
                        plan_id=target.id,
                        payment_id=payment.id,
                    )
            else:
                if new_price >= current_price and not current_is_free:
                    raise InvalidDowngradeError(current_price, new_price)
                subscription.status = SubscriptionStatus.DOWNGRADING.value
                subscription.downgrade_plan_id = target.id
                subscription.downgrade_billing_cycle = cycle.value
                subscription.downgrade_effective_at = subscription.current_period_end
                subscription.cancel_at_period_end = True
                await self._audit(
                    ctx,
                    tenant_id,
                    ActivityType.DOWNGRADE_SCHEDULED,
                    f"Downgrade to {target.code} scheduled for period end",
                    subscription,
                    plan_id=target.id,
                    effective_at=as_utc(subscription.current_period_end).isoformat(),
                )

        await self.features.invalidate(tenant_id)
        logger.info(
            "subscription.change_requested",
            tenant_id=tenant_id,
            action=change.value,
            target_plan_id=plan_id,
            status=subscription.status,
        )
        return ChangeResult(subscription=subscription, payment=payment)

    async def cancel_downgrade(self, ctx: RequestContext) -> ChangeResult:
        tenant_id = self._require_tenant(ctx)

        async with transaction(self.db):
            subscription = await self._get_subscription(tenant_id)
            if subscription is None:
                raise NoSubscriptionError(tenant_id)
            if subscription.status != SubscriptionStatus.DOWNGRADING.value:
                raise NoPendingDowngradeError(subscription.status)

            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.clear_downgrade()
            subscription.cancel_at_period_end = False
            await self._audit(
                ctx,
                tenant_id,
                ActivityType.DOWNGRADE_CANCELLED,
                "Scheduled downgrade cancelled",
                subscription,
            )

        await self.features.invalidate(tenant_id)
        logger.info("subscription.downgrade_cancelled", tenant_id=tenant_id)
        return ChangeResult(subscription=subscription)

    async def cancel_pending_upgrade(self, ctx: RequestContext) -> ChangeResult | None:
        """
        Abandon an unpaid plan change.

        A subscription that was active before goes back to its current plan;
        one that never activated ends up cancelled. Returns ``None`` when
        there is nothing pending.
        """
        tenant_id = self._require_tenant(ctx)

        async with transaction(self.db):
            subscription = await self._get_subscription(tenant_id)
            if (
                subscription is None
                or subscription.status != SubscriptionStatus.PENDING_PAYMENT.value
            ):
                return None

            payment = await self._pending_payment(subscription)
            if payment is not None and payment.status == PaymentStatus.PAID.value:
                raise PaymentAlreadyCapturedError(payment.id)

            now = self.clock()
            if payment is not None and payment.status == PaymentStatus.CREATED.value:
                payment.status = PaymentStatus.CANCELLED.value
                payment.metadata_json = {
                    **(payment.metadata_json or {}),
                    "cancelled_at": now.isoformat(),
                    "cancelled_by": ctx.user_id,
                    "cancel_reason": USER_CANCELLED_UPGRADE,
                }

            if subscription.has_been_activated:
                subscription.status = SubscriptionStatus.ACTIVE.value
            else:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancelled_at = now
            subscription.clear_pending()
            await self._audit(
                ctx,
                tenant_id,
                ActivityType.UPGRADE_CANCELLED,
                "Pending plan change cancelled",
                subscription,
                payment_id=payment.id if payment else None,
            )

        await self.features.invalidate(tenant_id)
        logger.info(
            "subscription.pending_upgrade_cancelled",
            tenant_id=tenant_id,
            status=subscription.status,
        )
        return ChangeResult(subscription=subscription, payment=payment)

    async def cancel_subscription(
        self, ctx: RequestContext, at_period_end: bool = True
    ) -> ChangeResult:
        tenant_id = self._require_tenant(ctx)

        async with transaction(self.db):
            subscription = await self._require_changeable(tenant_id, "cancel")
            if at_period_end:
                # Period-end cancellation replaces a scheduled downgrade
                if subscription.status == SubscriptionStatus.DOWNGRADING.value:
                    subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.clear_downgrade()
                subscription.cancel_at_period_end = True
            else:
                subscription.clear_downgrade()
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancel_at_period_end = False
                subscription.cancelled_at = self.clock()
            await self._audit(
                ctx,
                tenant_id,
                ActivityType.SUBSCRIPTION_CANCELLED,
                "Subscription cancelled"
                + (" at period end" if at_period_end else " immediately"),
                subscription,
                severity=ActivitySeverity.HIGH,
                at_period_end=at_period_end,
            )

        await self.features.invalidate(tenant_id)
        logger.info("subscription.cancelled", tenant_id=tenant_id, at_period_end=at_period_end)
        return ChangeResult(subscription=subscription)

    # ========================================
    # Background sweep
    # ========================================

    async def process_scheduled_downgrades(self, now: datetime | None = None) -> int:
        """Apply due downgrades and period-end cancellations, one transaction per row."""
        now = now or self.clock()
        due_stmt = select(Subscription.id).where(
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end <= now,
        )
        subscription_ids = list((await self.db.execute(due_stmt)).scalars().all())
        # End the read transaction before the per-row writes
        await self.db.commit()

        processed = 0
        for subscription_id in subscription_ids:
            tenant_id = await self._apply_period_end(subscription_id, now)
            if tenant_id is not None:
                processed += 1
                await self.features.invalidate(tenant_id)

        if processed:
            logger.info("subscription.downgrade_sweep", processed=processed)
        return processed

    async def _apply_period_end(self, subscription_id: str, now: datetime) -> str | None:
        async with transaction(self.db):
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.id == subscription_id,
                    Subscription.cancel_at_period_end.is_(True),
                    Subscription.current_period_end <= now,
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                return None

            target = (
                await self.catalog.get_by_id(subscription.downgrade_plan_id)
                if subscription.downgrade_plan_id
                else None
            )
            if target is not None:
                cycle = BillingCycle(
                    subscription.downgrade_billing_cycle or subscription.billing_cycle
                )
                self._activate(subscription, target, cycle, now)
                await self._audit(
                    None,
                    subscription.tenant_id,
                    ActivityType.DOWNGRADE_APPLIED,
                    f"Downgrade to {target.code} applied",
                    subscription,
                    plan_id=target.id,
                )
            else:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancel_at_period_end = False
                subscription.cancelled_at = now
                subscription.clear_downgrade()
                await self._audit(
                    None,
                    subscription.tenant_id,
                    ActivityType.SUBSCRIPTION_CANCELLED,
                    "Subscription cancelled at period end",
                    subscription,
                )
            return subscription.tenant_id
