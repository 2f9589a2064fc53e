"""
Billing API router: subscription lifecycle, checkout, quotes and entitlement reads.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Query, Request

from dotmac.entitlements.access.dependencies import require_permission
from dotmac.entitlements.access.permissions import SUBSCRIPTION_CHANGE
from dotmac.entitlements.addons.entitlement import AddonEntitlementResolver
from dotmac.entitlements.api.rate_limit import limiter, quote_limit
from dotmac.entitlements.api.schemas import (
    CancelSubscriptionRequest,
    ChangeSubscriptionRequest,
    ChangeSubscriptionResponse,
    CheckoutResponse,
    EntitlementResponse,
    FeaturesResponse,
    FeatureStateResponse,
    PaymentResponse,
    PlanResponse,
    QuoteRequest,
    SelectPlanRequest,
    SelectPlanResponse,
    StartCheckoutRequest,
    SubscriptionDetail,
    SubscriptionResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from dotmac.entitlements.context import RequestContext, get_request_context
from dotmac.entitlements.dependencies import (
    SettingsDep,
    get_addon_resolver,
    get_feature_resolver,
    get_lifecycle_manager,
    get_plan_catalog,
    get_quote_service,
    get_webhook_processor,
)
from dotmac.entitlements.exceptions import TenantRequiredError
from dotmac.entitlements.features.service import FeatureResolver
from dotmac.entitlements.plans.service import PlanCatalog
from dotmac.entitlements.pricing.quote import QuoteResult, QuoteService
from dotmac.entitlements.subscriptions.service import (
    ChangeResult,
    SubscriptionLifecycleManager,
)
from dotmac.entitlements.webhooks.processor import (
    EVENT_ID_HEADER,
    SIGNATURE_HEADER,
    WebhookProcessor,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["billing"])

ContextDep = Annotated[RequestContext, Depends(get_request_context)]
LifecycleDep = Annotated[SubscriptionLifecycleManager, Depends(get_lifecycle_manager)]
CAN_CHANGE = [Depends(require_permission(SUBSCRIPTION_CHANGE))]


def _change_response(result: ChangeResult | None) -> ChangeSubscriptionResponse:
    if result is None:
        return ChangeSubscriptionResponse(changed=False)
    return ChangeSubscriptionResponse(
        changed=result.changed,
        subscription=SubscriptionDetail.from_subscription(result.subscription),
        payment=PaymentResponse.from_payment(result.payment) if result.payment else None,
    )


# ========================================
# Subscription and plans
# ========================================


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(ctx: ContextDep, manager: LifecycleDep) -> SubscriptionResponse:
    """Current subscription, or the no_tenant / no_subscription sentinel."""
    snapshot = await manager.get_subscription(ctx)
    return SubscriptionResponse(
        status=snapshot.status,
        subscription=SubscriptionDetail.from_subscription(snapshot.subscription)
        if snapshot.subscription
        else None,
        plan=PlanResponse.from_plan(snapshot.plan) if snapshot.plan else None,
        pending_payment=PaymentResponse.from_payment(snapshot.pending_payment)
        if snapshot.pending_payment
        else None,
        downgrade_plan=PlanResponse.from_plan(snapshot.downgrade_plan)
        if snapshot.downgrade_plan
        else None,
    )


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(
    ctx: ContextDep,
    catalog: Annotated[PlanCatalog, Depends(get_plan_catalog)],
    config: SettingsDep,
    country: Annotated[str | None, Query(description="Billing country code")] = None,
) -> list[PlanResponse]:
    country_code = country or ctx.country_code or config.billing.default_country
    plans = await catalog.list_public_plans(country_code)
    return [PlanResponse.from_plan(plan) for plan in plans]


@router.post("/select-plan", response_model=SelectPlanResponse)
async def select_plan(
    payload: SelectPlanRequest, ctx: ContextDep, manager: LifecycleDep
) -> SelectPlanResponse:
    result = await manager.select_plan(ctx, payload.plan_code)
    return SelectPlanResponse(
        requires_tenant_setup=result.requires_tenant_setup,
        pending_plan_code=result.pending_plan_code,
        requires_payment=result.requires_payment,
        subscription=SubscriptionDetail.from_subscription(result.subscription)
        if result.subscription
        else None,
        plan=PlanResponse.from_plan(result.plan) if result.plan else None,
        payment=PaymentResponse.from_payment(result.payment) if result.payment else None,
    )


# ========================================
# Checkout
# ========================================


@router.post("/checkout/start", response_model=CheckoutResponse, dependencies=CAN_CHANGE)
async def start_checkout(
    payload: StartCheckoutRequest, ctx: ContextDep, manager: LifecycleDep
) -> CheckoutResponse:
    result = await manager.start_checkout(ctx, payload.plan_id, payload.cycle)
    return CheckoutResponse(
        payment=PaymentResponse.from_payment(result.payment),
        subscription=SubscriptionDetail.from_subscription(result.subscription),
    )


@router.post("/checkout/create", response_model=CheckoutResponse, dependencies=CAN_CHANGE)
async def create_checkout(ctx: ContextDep, manager: LifecycleDep) -> CheckoutResponse:
    result = await manager.create_checkout(ctx)
    return CheckoutResponse(
        payment=PaymentResponse.from_payment(result.payment),
        subscription=SubscriptionDetail.from_subscription(result.subscription),
        checkout=result.checkout,
    )


@router.post("/checkout/verify", response_model=VerifyPaymentResponse, dependencies=CAN_CHANGE)
async def verify_payment(
    payload: VerifyPaymentRequest, ctx: ContextDep, manager: LifecycleDep
) -> VerifyPaymentResponse:
    result = await manager.verify_payment(
        ctx, payload.payment_id, payload.provider_payment_id, payload.provider_signature
    )
    return VerifyPaymentResponse(
        activated=result.activated,
        already_processed=result.already_processed,
        payment=PaymentResponse.from_payment(result.payment),
        subscription=SubscriptionDetail.from_subscription(result.subscription)
        if result.subscription
        else None,
    )


@router.get("/checkout/pending", response_model=PaymentResponse | None)
async def get_pending_payment(ctx: ContextDep, manager: LifecycleDep) -> PaymentResponse | None:
    payment = await manager.get_pending_payment(ctx)
    return PaymentResponse.from_payment(payment) if payment else None


# ========================================
# Plan changes
# ========================================


@router.post(
    "/subscription/change", response_model=ChangeSubscriptionResponse, dependencies=CAN_CHANGE
)
async def change_subscription(
    payload: ChangeSubscriptionRequest, ctx: ContextDep, manager: LifecycleDep
) -> ChangeSubscriptionResponse:
    result = await manager.change_subscription(
        ctx, payload.plan_id, payload.action, payload.billing_cycle
    )
    return _change_response(result)


@router.post(
    "/subscription/cancel-downgrade",
    response_model=ChangeSubscriptionResponse,
    dependencies=CAN_CHANGE,
)
async def cancel_downgrade(ctx: ContextDep, manager: LifecycleDep) -> ChangeSubscriptionResponse:
    return _change_response(await manager.cancel_downgrade(ctx))


@router.post(
    "/subscription/cancel-pending-upgrade",
    response_model=ChangeSubscriptionResponse,
    dependencies=CAN_CHANGE,
)
async def cancel_pending_upgrade(
    ctx: ContextDep, manager: LifecycleDep
) -> ChangeSubscriptionResponse:
    return _change_response(await manager.cancel_pending_upgrade(ctx))


@router.post(
    "/subscription/cancel", response_model=ChangeSubscriptionResponse, dependencies=CAN_CHANGE
)
async def cancel_subscription(
    payload: CancelSubscriptionRequest, ctx: ContextDep, manager: LifecycleDep
) -> ChangeSubscriptionResponse:
    return _change_response(await manager.cancel_subscription(ctx, payload.at_period_end))


# ========================================
# Provider webhooks
# ========================================


@router.post("/payment-provider/webhook")
async def payment_provider_webhook(
    request: Request,
    processor: Annotated[WebhookProcessor, Depends(get_webhook_processor)],
) -> dict[str, Any]:
    body = await request.body()
    return await processor.process(
        body,
        signature=request.headers.get(SIGNATURE_HEADER),
        event_id_header=request.headers.get(EVENT_ID_HEADER),
    )


# ========================================
# Quotes and entitlements
# ========================================


@router.post("/quote", response_model=QuoteResult)
@limiter.limit(quote_limit)
async def quote(
    request: Request,
    payload: QuoteRequest,
    ctx: ContextDep,
    service: Annotated[QuoteService, Depends(get_quote_service)],
) -> QuoteResult:
    """Price a plan; no authentication needed and nothing is persisted."""
    return await service.quote(
        payload.plan_code,
        payload.billing_cycle,
        country_code=payload.country_code or ctx.country_code,
        coupon_code=payload.coupon_code,
        tenant_id=ctx.tenant_id or payload.tenant_id,
    )


@router.get("/features", response_model=FeaturesResponse)
async def get_features(
    ctx: ContextDep,
    features: Annotated[FeatureResolver, Depends(get_feature_resolver)],
) -> FeaturesResponse:
    if not ctx.tenant_id:
        raise TenantRequiredError()
    feature_set = await features.resolve(ctx.tenant_id)
    return FeaturesResponse(
        tenant_id=feature_set.tenant_id,
        tier=feature_set.tier.value,
        features={
            code: FeatureStateResponse(
                enabled=state.enabled, source=state.source, config=state.config
            )
            for code, state in feature_set.features.items()
        },
    )


@router.get("/addons/{addon_code}/entitlement", response_model=EntitlementResponse)
async def get_addon_entitlement(
    addon_code: str,
    ctx: ContextDep,
    addons: Annotated[AddonEntitlementResolver, Depends(get_addon_resolver)],
    config: SettingsDep,
) -> EntitlementResponse:
    if not ctx.tenant_id:
        raise TenantRequiredError()
    verdict = await addons.check_addon(ctx.tenant_id, addon_code)
    return EntitlementResponse(
        **verdict.model_dump(),
        upgrade_url=None if verdict.entitled else config.billing.upgrade_url,
    )
