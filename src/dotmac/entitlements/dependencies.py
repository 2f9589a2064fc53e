"""
Shared FastAPI dependencies.

Process-wide collaborators (cache backend, payment gateway, denial sink,
permission checker) are created once by the application lifespan and kept on
``app.state``. Services are built per request around the request's session.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.access.denial import DenialAuditSink
from dotmac.entitlements.access.gate import AccessGate
from dotmac.entitlements.access.permissions import ContextPermissionChecker, PermissionChecker
from dotmac.entitlements.addons.entitlement import AddonEntitlementResolver
from dotmac.entitlements.audit import AuditService
from dotmac.entitlements.cache import CacheBackend
from dotmac.entitlements.db import get_async_session
from dotmac.entitlements.features.service import FeatureResolver
from dotmac.entitlements.payments.gateway import PaymentGateway
from dotmac.entitlements.plans.service import PlanCatalog
from dotmac.entitlements.pricing.quote import QuoteService
from dotmac.entitlements.settings import Settings
from dotmac.entitlements.subscriptions.service import SubscriptionLifecycleManager
from dotmac.entitlements.webhooks.processor import WebhookProcessor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache_backend(request: Request) -> CacheBackend:
    return request.app.state.cache


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_denial_sink(request: Request) -> DenialAuditSink | None:
    return getattr(request.app.state, "denial_sink", None)


def get_permission_checker(request: Request) -> PermissionChecker:
    checker = getattr(request.app.state, "permission_checker", None)
    return checker or ContextPermissionChecker()


SessionDep = Annotated[AsyncSession, Depends(get_async_session)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]


def get_plan_catalog(db: SessionDep) -> PlanCatalog:
    return PlanCatalog(db)


def get_feature_resolver(
    db: SessionDep,
    cache: Annotated[CacheBackend, Depends(get_cache_backend)],
    config: SettingsDep,
) -> FeatureResolver:
    return FeatureResolver(db, cache, ttl=config.cache.feature_ttl_seconds)


def get_addon_resolver(db: SessionDep, config: SettingsDep) -> AddonEntitlementResolver:
    return AddonEntitlementResolver(db, grace_period_days=config.billing.grace_period_days)


def get_lifecycle_manager(
    db: SessionDep,
    features: Annotated[FeatureResolver, Depends(get_feature_resolver)],
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    config: SettingsDep,
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        db, features=features, gateway=gateway, audit=AuditService(db), config=config
    )


def get_quote_service(db: SessionDep, config: SettingsDep) -> QuoteService:
    return QuoteService(
        db,
        tax_rules=config.billing.tax_rules,
        default_country=config.billing.default_country,
    )


def get_webhook_processor(
    db: SessionDep,
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    lifecycle: Annotated[SubscriptionLifecycleManager, Depends(get_lifecycle_manager)],
    addons: Annotated[AddonEntitlementResolver, Depends(get_addon_resolver)],
) -> WebhookProcessor:
    return WebhookProcessor(db, gateway=gateway, lifecycle=lifecycle, addons=addons)


def get_access_gate(
    features: Annotated[FeatureResolver, Depends(get_feature_resolver)],
    addons: Annotated[AddonEntitlementResolver, Depends(get_addon_resolver)],
    permissions: Annotated[PermissionChecker, Depends(get_permission_checker)],
    denial_sink: Annotated[DenialAuditSink | None, Depends(get_denial_sink)],
    config: SettingsDep,
) -> AccessGate:
    return AccessGate(
        features=features,
        addons=addons,
        permissions=permissions,
        denial_sink=denial_sink,
        upgrade_url=config.billing.upgrade_url,
    )
