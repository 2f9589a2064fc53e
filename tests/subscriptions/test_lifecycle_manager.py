"""
Tests for the subscription lifecycle: plan selection, checkout, verification,
plan changes, cancellation and the period-end sweep.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select, update

from conftest import TENANT_ID
from dotmac.entitlements.audit import ActivityType, AuditService
from dotmac.entitlements.context import RequestContext
from dotmac.entitlements.db import as_utc
from dotmac.entitlements.exceptions import (
    InvalidDowngradeError,
    InvalidPaymentStateError,
    InvalidUpgradeError,
    NoOrderError,
    NoPendingDowngradeError,
    NoPendingPaymentError,
    NoSubscriptionError,
    PaymentMismatchError,
    PaymentNotFoundError,
    PaymentVerificationError,
    PlanArchivedError,
    PlanCountryMismatchError,
    SignatureRequiredError,
    SubscriptionExistsError,
    SubscriptionStateError,
    TenantRequiredError,
    ValidationError,
)
from dotmac.entitlements.features.service import FeatureResolver
from dotmac.entitlements.payments import RazorpayGateway
from dotmac.entitlements.payments.gateway import hmac_sha256_hex
from dotmac.entitlements.plans.models import PlanTier
from dotmac.entitlements.subscriptions.models import NO_SUBSCRIPTION, NO_TENANT, Payment
from dotmac.entitlements.subscriptions.service import (
    USER_CANCELLED_UPGRADE,
    SubscriptionLifecycleManager,
    add_months,
)

pytestmark = pytest.mark.integration

START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


async def activate(manager: SubscriptionLifecycleManager, ctx: RequestContext, plan_code: str):
    """Select a priced plan and complete its mock checkout."""
    selected = await manager.select_plan(ctx, plan_code)
    result = await manager.verify_payment(ctx, selected.payment.id, "pay_initial")
    assert result.activated
    return result


async def activity_types(db_session) -> set[str]:
    activities = await AuditService(db_session).get_recent_activities(TENANT_ID)
    return {activity.activity_type for activity in activities}


async def payment_count(db_session) -> int:
    return (await db_session.execute(select(func.count()).select_from(Payment))).scalar_one()


@pytest.mark.unit
class TestAddMonths:
    def test_clamps_to_end_of_short_months(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_crosses_years(self):
        assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(
            2027, 2, 15, tzinfo=UTC
        )


class TestGetSubscription:
    async def test_sentinels(self, manager, ctx):
        assert (await manager.get_subscription(RequestContext())).status == NO_TENANT
        assert (await manager.get_subscription(ctx)).status == NO_SUBSCRIPTION

    async def test_snapshot_includes_pending_payment(self, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)

        snapshot = await manager.get_subscription(ctx)

        assert snapshot.status == "pending_payment"
        assert snapshot.plan.code == "india_starter"
        assert snapshot.pending_payment.id == selected.payment.id


class TestSelectPlan:
    async def test_without_tenant_requires_setup(self, manager, plans):
        result = await manager.select_plan(RequestContext(user_id="u1"), "india_starter")

        assert result.requires_tenant_setup
        assert result.pending_plan_code == "india_starter"
        assert result.subscription is None

    async def test_free_plan_activates_immediately(self, db_session, manager, features, ctx, plans):
        result = await manager.select_plan(ctx, plans["free"].code)

        assert not result.requires_payment
        subscription = result.subscription
        assert subscription.status == "active"
        assert as_utc(subscription.current_period_start) == START
        assert as_utc(subscription.current_period_end) == datetime(2126, 3, 1, 9, 0, tzinfo=UTC)
        assert as_utc(subscription.activated_at) == START
        assert await payment_count(db_session) == 0
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.FREE
        assert ActivityType.SUBSCRIPTION_ACTIVATED.value in await activity_types(db_session)

    async def test_priced_plan_awaits_payment(self, db_session, manager, ctx, plans):
        result = await manager.select_plan(ctx, plans["starter"].code)

        assert result.requires_payment
        subscription, payment = result.subscription, result.payment
        assert subscription.status == "pending_payment"
        assert subscription.pending_plan_id == plans["starter"].id
        assert subscription.pending_payment_id == payment.id
        assert subscription.pending_quote_amount == Decimal("999")
        assert as_utc(subscription.current_period_end) == add_months(START, 1)
        assert subscription.activated_at is None
        assert payment.status == "created"
        assert payment.amount == Decimal("999")
        assert payment.amount_minor == 99900
        assert payment.provider == "mock"
        assert ActivityType.PLAN_SELECTED.value in await activity_types(db_session)

    async def test_reselecting_same_plan_reuses_payment(self, db_session, manager, ctx, plans):
        first = await manager.select_plan(ctx, plans["starter"].code)
        second = await manager.select_plan(ctx, plans["starter"].code)

        assert second.payment.id == first.payment.id
        assert await payment_count(db_session) == 1

    async def test_selecting_another_plan_supersedes_payment(
        self, db_session, manager, ctx, plans
    ):
        first = await manager.select_plan(ctx, plans["starter"].code)
        second = await manager.select_plan(ctx, plans["pro"].code)

        stale = await db_session.get(Payment, first.payment.id)
        assert stale.status == "cancelled"
        assert stale.metadata_json["cancel_reason"] == "PLAN_SELECTED"
        assert second.subscription.plan_id == plans["pro"].id
        assert second.subscription.pending_payment_id == second.payment.id

    async def test_active_subscription_cannot_select(self, manager, ctx, plans):
        await manager.select_plan(ctx, plans["free"].code)

        with pytest.raises(SubscriptionExistsError) as exc_info:
            await manager.select_plan(ctx, plans["starter"].code)
        assert exc_info.value.error_code == "SUBSCRIPTION_EXISTS"
        assert exc_info.value.status_code == 409

    async def test_foreign_plan_is_rejected(self, manager, ctx, plans):
        with pytest.raises(PlanCountryMismatchError):
            await manager.select_plan(ctx, plans["uk_pro"].code)

    async def test_tenant_country_decides_catalog(self, manager, plans):
        uk_ctx = RequestContext(tenant_id="tenant-uk", user_id="u1", country_code="UK")

        result = await manager.select_plan(uk_ctx, plans["uk_pro"].code)

        assert result.payment.currency == "GBP"

    async def test_default_country_applies_without_tenant_country(self, manager, plans):
        result = await manager.select_plan(RequestContext(tenant_id="tenant-x"), "india_starter")

        assert result.requires_payment

    async def test_archived_plan_is_rejected(self, manager, ctx, plans):
        with pytest.raises(PlanArchivedError):
            await manager.select_plan(ctx, plans["archived"].code)


class TestCheckout:
    async def test_create_checkout_uses_mock_order(self, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)

        result = await manager.create_checkout(ctx)

        payment_id = selected.payment.id
        assert result.payment.provider_order_id == f"order_mock_{payment_id}"
        assert result.checkout["order_id"] == f"order_mock_{payment_id}"
        assert result.checkout["amount"] == 99900
        assert result.checkout["currency"] == "INR"
        assert result.checkout["payment_id"] == payment_id

    async def test_create_checkout_replays_existing_order(self, manager, ctx, plans, gateway):
        await manager.select_plan(ctx, plans["starter"].code)

        first = await manager.create_checkout(ctx)
        second = await manager.create_checkout(ctx)

        assert second.checkout == first.checkout
        assert len(gateway.orders) == 1

    async def test_create_checkout_requires_pending_payment(self, manager, ctx, plans):
        with pytest.raises(NoPendingPaymentError):
            await manager.create_checkout(ctx)

        await manager.select_plan(ctx, plans["free"].code)
        with pytest.raises(NoPendingPaymentError):
            await manager.create_checkout(ctx)

    async def test_start_checkout_on_yearly_cycle(self, db_session, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)

        started = await manager.start_checkout(ctx, plans["starter"].id, "yearly")

        assert started.payment.amount == Decimal("9999")
        assert started.subscription.pending_billing_cycle == "yearly"
        superseded = await db_session.get(Payment, selected.payment.id)
        assert superseded.status == "cancelled"
        assert superseded.metadata_json["cancel_reason"] == "CHECKOUT_RESTARTED"

        verified = await manager.verify_payment(ctx, started.payment.id, "pay_yearly")

        assert verified.subscription.billing_cycle == "yearly"
        assert as_utc(verified.subscription.current_period_end) == add_months(START, 12)

    async def test_disabled_cycle_charges_base_price(self, manager, ctx, plans):
        started = await manager.start_checkout(ctx, plans["starter"].id, "half_yearly")

        assert started.payment.amount == Decimal("999")

    async def test_checkout_requires_tenant(self, manager, plans):
        with pytest.raises(TenantRequiredError):
            await manager.start_checkout(RequestContext(), plans["starter"].id, "monthly")


class TestVerifyPayment:
    async def test_mock_verification_activates(
        self, db_session, manager, features, ctx, plans, clock
    ):
        selected = await manager.select_plan(ctx, plans["starter"].code)
        clock.advance(minutes=5)

        result = await manager.verify_payment(ctx, selected.payment.id, "pay_1")

        assert result.activated
        assert not result.already_processed
        subscription = result.subscription
        assert subscription.status == "active"
        assert subscription.pending_payment_id is None
        assert subscription.pending_plan_id is None
        assert as_utc(subscription.current_period_start) == START + timedelta(minutes=5)
        assert as_utc(subscription.current_period_end) == add_months(
            START + timedelta(minutes=5), 1
        )
        assert as_utc(subscription.last_payment_at) == START + timedelta(minutes=5)
        payment = await db_session.get(Payment, selected.payment.id)
        assert payment.status == "paid"
        assert payment.provider_payment_id == "pay_1"
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.STARTER

    async def test_reverify_is_idempotent(self, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)
        await manager.verify_payment(ctx, selected.payment.id, "pay_1")

        again = await manager.verify_payment(ctx, selected.payment.id, "pay_1")

        assert again.already_processed
        assert not again.activated
        assert again.subscription.status == "active"

    async def test_concurrent_capture_applies_once(self, db_session, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)
        # Another worker captures the payment; this session still sees it as created
        await db_session.execute(
            update(Payment)
            .where(Payment.id == selected.payment.id)
            .values(status="paid")
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        result = await manager.verify_payment(ctx, selected.payment.id, "pay_dup")

        assert not result.activated
        assert result.subscription.status == "pending_payment"

    async def test_unknown_payment(self, manager, ctx, plans):
        with pytest.raises(PaymentNotFoundError):
            await manager.verify_payment(ctx, "missing", "pay_1")

    async def test_other_tenants_payment_is_not_found(self, manager, ctx, plans):
        selected = await manager.select_plan(ctx, plans["starter"].code)
        payment_id = selected.payment.id

        with pytest.raises(PaymentNotFoundError):
            await manager.verify_payment(RequestContext(tenant_id="intruder"), payment_id, "p")

    async def test_superseded_payment_cannot_be_verified(self, manager, ctx, plans):
        first = await manager.select_plan(ctx, plans["starter"].code)
        first_id = first.payment.id
        await manager.select_plan(ctx, plans["pro"].code)

        with pytest.raises(InvalidPaymentStateError) as exc_info:
            await manager.verify_payment(ctx, first_id, "pay_1")
        assert exc_info.value.error_code == "INVALID_PAYMENT_STATE"

    async def test_payment_for_a_settled_subscription_is_a_mismatch(
        self, db_session, manager, ctx, plans
    ):
        result = await activate(manager, ctx, plans["starter"].code)
        stray = Payment(
            tenant_id=TENANT_ID,
            subscription_id=result.subscription.id,
            plan_id=plans["pro"].id,
            provider="mock",
            status="created",
            amount=Decimal("2499"),
            currency="INR",
            metadata_json={},
        )
        db_session.add(stray)
        await db_session.commit()

        with pytest.raises(PaymentMismatchError):
            await manager.verify_payment(ctx, stray.id, "pay_2")


def _order_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "order_live_1", "amount": 99900, "currency": "INR"})

    return httpx.MockTransport(handler)


class TestSignedVerification:
    """Verification against a gateway that checks checkout signatures."""

    @pytest_asyncio.fixture
    async def signed_manager(self, db_session, cache, test_settings, clock):
        gateway = RazorpayGateway(
            key_id="rzp_test_key",
            key_secret="rzp_test_secret",
            transport=_order_transport(),
            backoff_seconds=0,
        )
        yield SubscriptionLifecycleManager(
            db_session,
            features=FeatureResolver(db_session, cache),
            gateway=gateway,
            config=test_settings,
            clock=clock,
        )
        await gateway.close()

    async def test_signature_is_required(self, signed_manager, ctx, plans):
        selected = await signed_manager.select_plan(ctx, plans["starter"].code)

        with pytest.raises(SignatureRequiredError):
            await signed_manager.verify_payment(ctx, selected.payment.id, "pay_1")

    async def test_order_must_exist(self, signed_manager, ctx, plans):
        selected = await signed_manager.select_plan(ctx, plans["starter"].code)

        with pytest.raises(NoOrderError):
            await signed_manager.verify_payment(ctx, selected.payment.id, "pay_1", "sig")

    async def test_bad_signature_marks_payment_failed(
        self, db_session, signed_manager, ctx, plans
    ):
        selected = await signed_manager.select_plan(ctx, plans["starter"].code)
        payment_id = selected.payment.id
        await signed_manager.create_checkout(ctx)

        with pytest.raises(PaymentVerificationError) as exc_info:
            await signed_manager.verify_payment(ctx, payment_id, "pay_1", "forged")
        assert exc_info.value.error_code == "PAYMENT_VERIFICATION_FAILED"

        payment = await db_session.get(Payment, payment_id)
        assert payment.status == "failed"
        assert payment.error_message == "Signature verification failed"
        snapshot = await signed_manager.get_subscription(ctx)
        assert snapshot.status == "pending_payment"
        assert snapshot.subscription.pending_payment_id is None
        assert snapshot.pending_payment is None
        assert ActivityType.PAYMENT_FAILED.value in await activity_types(db_session)

        with pytest.raises(NoPendingPaymentError):
            await signed_manager.create_checkout(ctx)
        retry = await signed_manager.select_plan(ctx, plans["starter"].code)
        assert retry.payment.id != payment_id

    async def test_bad_signature_on_upgrade_restores_live_plan(
        self, signed_manager, features, ctx, plans
    ):
        selected = await signed_manager.select_plan(ctx, plans["starter"].code)
        await signed_manager.create_checkout(ctx)
        signature = hmac_sha256_hex("rzp_test_secret", "order_live_1|pay_live_1")
        await signed_manager.verify_payment(ctx, selected.payment.id, "pay_live_1", signature)

        change = await signed_manager.change_subscription(ctx, plans["pro"].id, "upgrade")
        await signed_manager.create_checkout(ctx)
        with pytest.raises(PaymentVerificationError):
            await signed_manager.verify_payment(ctx, change.payment.id, "pay_live_2", "forged")

        subscription = (await signed_manager.get_subscription(ctx)).subscription
        assert subscription.status == "active"
        assert subscription.plan_id == plans["starter"].id
        assert subscription.pending_plan_id is None
        assert subscription.pending_payment_id is None
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.STARTER

    async def test_valid_signature_activates(self, signed_manager, ctx, plans):
        selected = await signed_manager.select_plan(ctx, plans["starter"].code)
        checkout = await signed_manager.create_checkout(ctx)
        assert checkout.checkout["key"] == "rzp_test_key"
        signature = hmac_sha256_hex("rzp_test_secret", "order_live_1|pay_live_1")

        result = await signed_manager.verify_payment(
            ctx, selected.payment.id, "pay_live_1", signature
        )

        assert result.activated
        assert result.payment.provider_signature == signature


class TestPlanChanges:
    async def test_paid_upgrade_waits_for_payment(self, manager, features, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)

        change = await manager.change_subscription(ctx, plans["pro"].id, "upgrade")

        assert change.payment.amount == Decimal("2499")
        assert change.payment.metadata_json["upgrade_from"] == plans["starter"].id
        assert change.payment.metadata_json["upgrade_to"] == plans["pro"].id
        subscription = change.subscription
        assert subscription.status == "pending_payment"
        assert subscription.plan_id == plans["starter"].id
        assert subscription.pending_plan_id == plans["pro"].id
        # The paid plan stays live until the upgrade is captured
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.STARTER

        verified = await manager.verify_payment(ctx, change.payment.id, "pay_upgrade")

        assert verified.subscription.plan_id == plans["pro"].id
        assert verified.subscription.status == "active"
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.PRO

    async def test_upgrade_must_cost_more(self, manager, ctx, plans):
        await activate(manager, ctx, plans["pro"].code)

        with pytest.raises(InvalidUpgradeError) as exc_info:
            await manager.change_subscription(ctx, plans["starter"].id, "upgrade")
        assert exc_info.value.error_code == "INVALID_UPGRADE"

    async def test_downgrade_must_cost_less(self, manager, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)

        with pytest.raises(InvalidDowngradeError) as exc_info:
            await manager.change_subscription(ctx, plans["pro"].id, "downgrade")
        assert exc_info.value.error_code == "INVALID_DOWNGRADE"

    async def test_upgrade_to_free_applies_immediately(self, manager, features, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)

        change = await manager.change_subscription(ctx, plans["free"].id, "upgrade")

        assert change.payment is None
        assert change.subscription.status == "active"
        assert change.subscription.plan_id == plans["free"].id
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.FREE

    async def test_downgrade_is_scheduled_for_period_end(
        self, db_session, manager, features, ctx, plans
    ):
        activated = await activate(manager, ctx, plans["pro"].code)
        period_end = as_utc(activated.subscription.current_period_end)

        change = await manager.change_subscription(ctx, plans["starter"].id, "downgrade")

        subscription = change.subscription
        assert subscription.status == "downgrading"
        assert subscription.plan_id == plans["pro"].id
        assert subscription.downgrade_plan_id == plans["starter"].id
        assert subscription.downgrade_billing_cycle == "monthly"
        assert as_utc(subscription.downgrade_effective_at) == period_end
        assert subscription.cancel_at_period_end is True
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.PRO
        assert ActivityType.DOWNGRADE_SCHEDULED.value in await activity_types(db_session)

    async def test_cancel_downgrade(self, manager, ctx, plans):
        await activate(manager, ctx, plans["pro"].code)
        await manager.change_subscription(ctx, plans["starter"].id, "downgrade")

        result = await manager.cancel_downgrade(ctx)

        assert result.subscription.status == "active"
        assert result.subscription.downgrade_plan_id is None
        assert result.subscription.downgrade_effective_at is None
        assert result.subscription.cancel_at_period_end is False

        with pytest.raises(NoPendingDowngradeError):
            await manager.cancel_downgrade(ctx)

    async def test_upgrade_replaces_scheduled_downgrade(self, manager, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)
        await manager.change_subscription(ctx, plans["free"].id, "downgrade")

        change = await manager.change_subscription(ctx, plans["pro"].id, "upgrade")

        subscription = change.subscription
        assert subscription.status == "pending_payment"
        assert subscription.downgrade_plan_id is None
        assert subscription.cancel_at_period_end is False
        assert subscription.pending_payment_id == change.payment.id

    async def test_pending_subscription_cannot_change(self, manager, ctx, plans):
        await manager.select_plan(ctx, plans["starter"].code)

        with pytest.raises(SubscriptionStateError) as exc_info:
            await manager.change_subscription(ctx, plans["pro"].id, "upgrade")
        assert exc_info.value.error_code == "INVALID_SUBSCRIPTION_STATUS"

    async def test_change_without_subscription(self, manager, ctx, plans):
        with pytest.raises(NoSubscriptionError):
            await manager.change_subscription(ctx, plans["pro"].id, "upgrade")

    async def test_unknown_action(self, manager, ctx, plans):
        with pytest.raises(ValidationError):
            await manager.change_subscription(ctx, plans["pro"].id, "sidegrade")


class TestCancelPendingUpgrade:
    async def test_restores_previous_plan(self, db_session, manager, features, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)
        change = await manager.change_subscription(ctx, plans["pro"].id, "upgrade")
        payment_id = change.payment.id

        result = await manager.cancel_pending_upgrade(ctx)

        assert result.subscription.status == "active"
        assert result.subscription.plan_id == plans["starter"].id
        assert result.subscription.pending_payment_id is None
        payment = await db_session.get(Payment, payment_id)
        assert payment.status == "cancelled"
        assert payment.metadata_json["cancel_reason"] == USER_CANCELLED_UPGRADE
        assert payment.metadata_json["cancelled_by"] == "user-owner"
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.STARTER

    async def test_never_activated_subscription_is_cancelled(self, manager, ctx, plans, clock):
        await manager.select_plan(ctx, plans["starter"].code)

        result = await manager.cancel_pending_upgrade(ctx)

        assert result.subscription.status == "cancelled"
        assert as_utc(result.subscription.cancelled_at) == clock()

    async def test_nothing_pending(self, manager, ctx, plans):
        assert await manager.cancel_pending_upgrade(ctx) is None

        await manager.select_plan(ctx, plans["free"].code)
        assert await manager.cancel_pending_upgrade(ctx) is None

    async def test_cancelled_tenant_can_select_again(self, manager, ctx, plans):
        await manager.select_plan(ctx, plans["starter"].code)
        await manager.cancel_pending_upgrade(ctx)

        result = await manager.select_plan(ctx, plans["pro"].code)

        assert result.subscription.status == "pending_payment"
        assert result.subscription.plan_id == plans["pro"].id


class TestCancelSubscription:
    async def test_cancel_at_period_end(self, manager, ctx, plans, clock):
        await activate(manager, ctx, plans["starter"].code)

        result = await manager.cancel_subscription(ctx, at_period_end=True)

        assert result.subscription.status == "active"
        assert result.subscription.cancel_at_period_end is True

        clock.advance(days=32)
        assert await manager.process_scheduled_downgrades() == 1
        snapshot = await manager.get_subscription(ctx)
        assert snapshot.status == "cancelled"
        assert snapshot.subscription.cancel_at_period_end is False

    async def test_cancel_immediately(self, db_session, manager, features, ctx, plans):
        await activate(manager, ctx, plans["starter"].code)

        result = await manager.cancel_subscription(ctx, at_period_end=False)

        assert result.subscription.status == "cancelled"
        assert result.subscription.cancelled_at is not None
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.FREE
        assert ActivityType.SUBSCRIPTION_CANCELLED.value in await activity_types(db_session)

    async def test_period_end_cancel_replaces_downgrade(self, manager, ctx, plans):
        await activate(manager, ctx, plans["pro"].code)
        await manager.change_subscription(ctx, plans["starter"].id, "downgrade")

        result = await manager.cancel_subscription(ctx)

        assert result.subscription.status == "active"
        assert result.subscription.downgrade_plan_id is None
        assert result.subscription.cancel_at_period_end is True

    async def test_pending_subscription_cannot_be_cancelled(self, manager, ctx, plans):
        await manager.select_plan(ctx, plans["starter"].code)

        with pytest.raises(SubscriptionStateError):
            await manager.cancel_subscription(ctx)


class TestDowngradeSweep:
    async def test_applies_due_downgrades(self, db_session, manager, features, ctx, plans, clock):
        await activate(manager, ctx, plans["pro"].code)
        await manager.change_subscription(ctx, plans["starter"].id, "downgrade")

        assert await manager.process_scheduled_downgrades() == 0

        now = clock.advance(days=31)
        assert await manager.process_scheduled_downgrades() == 1

        snapshot = await manager.get_subscription(ctx)
        subscription = snapshot.subscription
        assert snapshot.status == "active"
        assert subscription.plan_id == plans["starter"].id
        assert subscription.downgrade_plan_id is None
        assert subscription.cancel_at_period_end is False
        assert as_utc(subscription.current_period_start) == now
        assert as_utc(subscription.current_period_end) == add_months(now, 1)
        assert await features.get_tenant_tier(TENANT_ID) == PlanTier.STARTER
        assert ActivityType.DOWNGRADE_APPLIED.value in await activity_types(db_session)

    async def test_sweep_is_idempotent(self, manager, ctx, plans, clock):
        await activate(manager, ctx, plans["pro"].code)
        await manager.change_subscription(ctx, plans["starter"].id, "downgrade")
        clock.advance(days=31)

        assert await manager.process_scheduled_downgrades() == 1
        assert await manager.process_scheduled_downgrades() == 0

    async def test_explicit_sweep_time(self, manager, ctx, plans):
        await activate(manager, ctx, plans["pro"].code)
        await manager.change_subscription(ctx, plans["starter"].id, "downgrade")

        assert await manager.process_scheduled_downgrades(START + timedelta(days=60)) == 1
