"""
Add-on entitlement resolution.

Turns an installation row into a verdict, applies the caller's grace policy,
and requires every declared dependency to be entitled as well. Also owns the
time-driven and provider-driven installation transitions.
"""

import math
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.addons.models import (
    AddonDefinition,
    AddonInstallation,
    InstallationStatus,
    ProviderSubscriptionStatus,
)
from dotmac.entitlements.context import OperationClass
from dotmac.entitlements.db import as_utc, transaction, utc_now

logger = structlog.get_logger(__name__)

COUNTRY_SUFFIXES = ("-india", "-malaysia", "-uk", "-uae")

# Employee directory is available with either add-on
DIRECTORY_ADDONS = ("payroll", "hrms")
DIRECTORY_FALLBACK_ADDON = "hrms"

_LIVE_INSTALL_STATUSES = {
    InstallationStatus.ACTIVE.value,
    InstallationStatus.TRIAL.value,
    InstallationStatus.GRACE_PERIOD.value,
}
_PAID_BILLING_STATUSES = {
    None,
    ProviderSubscriptionStatus.ACTIVE.value,
    ProviderSubscriptionStatus.CANCELLED.value,
}
_LAPSED_BILLING_STATUSES = {
    None,
    ProviderSubscriptionStatus.ACTIVE.value,
    ProviderSubscriptionStatus.PAST_DUE.value,
}


class EntitlementState(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    GRACE = "grace"
    EXPIRED = "expired"
    NOT_INSTALLED = "not_installed"
    CANCELLED = "cancelled"


class ReasonCode(str, Enum):
    ADDON_ACTIVE = "ADDON_ACTIVE"
    ADDON_TRIAL_ACTIVE = "ADDON_TRIAL_ACTIVE"
    ADDON_GRACE_PERIOD = "ADDON_GRACE_PERIOD"
    ADDON_EXPIRED = "ADDON_EXPIRED"
    ADDON_TRIAL_EXPIRED = "ADDON_TRIAL_EXPIRED"
    ADDON_NOT_INSTALLED = "ADDON_NOT_INSTALLED"
    ADDON_CANCELLED = "ADDON_CANCELLED"
    ADDON_DEPENDENCY_MISSING = "ADDON_DEPENDENCY_MISSING"
    ADDON_DEPENDENCY_EXPIRED = "ADDON_DEPENDENCY_EXPIRED"


class GracePolicy(str, Enum):
    """How a protected operation treats an add-on in its grace window."""

    ALLOW = "allow"
    DENY_WRITES = "deny_writes"
    DENY = "deny"


class EntitlementVerdict(BaseModel):
    addon: str
    entitled: bool
    state: EntitlementState
    reason_code: ReasonCode
    message: str
    valid_until: datetime | None = None
    days_remaining: int | None = None
    dependency: str | None = None


def days_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds() / 86400))


def base_addon_code(addon_code: str) -> str | None:
    """Base slug of a country variant (``payroll-india`` -> ``payroll``)."""
    for suffix in COUNTRY_SUFFIXES:
        if addon_code.endswith(suffix):
            return addon_code[: -len(suffix)]
    return None


def evaluate_installation(
    addon_code: str,
    installation: AddonInstallation | None,
    now: datetime,
    grace_period_days: int = 3,
) -> EntitlementVerdict:
    """Map one installation row to a verdict, ignoring dependencies and policy."""
    if installation is None:
        return EntitlementVerdict(
            addon=addon_code,
            entitled=False,
            state=EntitlementState.NOT_INSTALLED,
            reason_code=ReasonCode.ADDON_NOT_INSTALLED,
            message="Add-on is not installed",
        )

    status = (installation.status or "").lower()
    billing = (installation.subscription_status or "").lower() or None
    trial_ends = as_utc(installation.trial_ends_at)
    paid_until = as_utc(installation.current_period_end)

    is_trial = billing == ProviderSubscriptionStatus.TRIALING.value or (
        billing is None and status == InstallationStatus.TRIAL.value
    )
    if is_trial and trial_ends is not None:
        if now <= trial_ends:
            remaining = days_until(trial_ends, now)
            return EntitlementVerdict(
                addon=addon_code,
                entitled=True,
                state=EntitlementState.TRIAL,
                reason_code=ReasonCode.ADDON_TRIAL_ACTIVE,
                valid_until=trial_ends,
                days_remaining=remaining,
                message=f"Trial active, {remaining} days remaining",
            )
        return EntitlementVerdict(
            addon=addon_code,
            entitled=False,
            state=EntitlementState.EXPIRED,
            reason_code=ReasonCode.ADDON_TRIAL_EXPIRED,
            valid_until=trial_ends,
            message=f"Your trial ended on {trial_ends.date().isoformat()}. Renew to continue.",
        )

    if status == InstallationStatus.EXPIRED.value:
        return EntitlementVerdict(
            addon=addon_code,
            entitled=False,
            state=EntitlementState.EXPIRED,
            reason_code=ReasonCode.ADDON_EXPIRED,
            valid_until=paid_until,
            message="Subscription has expired. Renew to continue.",
        )
    if status not in _LIVE_INSTALL_STATUSES:
        return EntitlementVerdict(
            addon=addon_code,
            entitled=False,
            state=EntitlementState.CANCELLED,
            reason_code=ReasonCode.ADDON_CANCELLED,
            message="Add-on has been cancelled or disabled",
        )

    # A provider-cancelled subscription stays usable through the paid period
    if billing in _PAID_BILLING_STATUSES:
        if paid_until is not None and now <= paid_until:
            return EntitlementVerdict(
                addon=addon_code,
                entitled=True,
                state=EntitlementState.ACTIVE,
                reason_code=ReasonCode.ADDON_ACTIVE,
                valid_until=paid_until,
                days_remaining=days_until(paid_until, now),
                message="Subscription active",
            )
        if paid_until is None and billing != ProviderSubscriptionStatus.CANCELLED.value:
            return EntitlementVerdict(
                addon=addon_code,
                entitled=True,
                state=EntitlementState.ACTIVE,
                reason_code=ReasonCode.ADDON_ACTIVE,
                message="Subscription active",
            )

    grace_until = as_utc(installation.grace_until)
    if grace_until is None and paid_until is not None and billing in _LAPSED_BILLING_STATUSES:
        grace_until = paid_until + timedelta(days=grace_period_days)
    if grace_until is not None and now <= grace_until:
        remaining = days_until(grace_until, now)
        return EntitlementVerdict(
            addon=addon_code,
            entitled=True,
            state=EntitlementState.GRACE,
            reason_code=ReasonCode.ADDON_GRACE_PERIOD,
            valid_until=grace_until,
            days_remaining=remaining,
            message=f"You're in grace period until {grace_until.date().isoformat()}.",
        )

    return EntitlementVerdict(
        addon=addon_code,
        entitled=False,
        state=EntitlementState.EXPIRED,
        reason_code=ReasonCode.ADDON_EXPIRED,
        valid_until=paid_until,
        message="Add-on subscription has expired",
    )


def apply_grace_policy(
    verdict: EntitlementVerdict, policy: GracePolicy, operation: OperationClass
) -> EntitlementVerdict:
    """Grace is an entitlement only where the protected operation allows it."""
    if verdict.state != EntitlementState.GRACE or policy == GracePolicy.ALLOW:
        return verdict
    if policy == GracePolicy.DENY_WRITES and operation == OperationClass.READ:
        return verdict
    return verdict.model_copy(
        update={
            "entitled": False,
            "reason_code": ReasonCode.ADDON_EXPIRED,
            "message": "Add-on subscription has lapsed. Renew it to make changes.",
        }
    )


def _ordered_unique(codes: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for code in codes:
        seen.setdefault(code, None)
    return list(seen)


class AddonEntitlementResolver:
    """Computes add-on verdicts for tenants and applies installation transitions."""

    def __init__(
        self,
        db: AsyncSession,
        grace_period_days: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.grace_period_days = grace_period_days
        self.clock = clock

    # ==================== Lookups ====================

    async def get_definition(self, addon_code: str) -> AddonDefinition | None:
        result = await self.db.execute(
            select(AddonDefinition).where(AddonDefinition.slug == addon_code)
        )
        return result.scalar_one_or_none()

    async def _find_installation(
        self, tenant_id: str, addon_code: str
    ) -> AddonInstallation | None:
        stmt = (
            select(AddonInstallation)
            .join(AddonDefinition, AddonDefinition.id == AddonInstallation.addon_id)
            .where(AddonInstallation.tenant_id == tenant_id, AddonDefinition.slug == addon_code)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_installation(self, tenant_id: str, addon_code: str) -> AddonInstallation | None:
        """Installation for ``addon_code``, falling back to the base slug for country variants."""
        installation = await self._find_installation(tenant_id, addon_code)
        if installation is not None:
            return installation
        base = base_addon_code(addon_code)
        return await self._find_installation(tenant_id, base) if base else None

    # ==================== Verdicts ====================

    async def evaluate(self, tenant_id: str, addon_code: str) -> EntitlementVerdict:
        """Own installation state only, no dependencies, no grace policy."""
        installation = await self.get_installation(tenant_id, addon_code)
        return evaluate_installation(addon_code, installation, self.clock(), self.grace_period_days)

    async def check_addon(
        self,
        tenant_id: str,
        addon_code: str,
        *,
        dependencies: Iterable[str] | None = None,
        grace_policy: GracePolicy = GracePolicy.ALLOW,
        operation: OperationClass = OperationClass.READ,
    ) -> EntitlementVerdict:
        """
        Full verdict for a tenant and add-on.

        The add-on must be entitled on its own, and every declared or
        caller-supplied dependency must resolve to entitled too.
        """
        return await self._check(
            tenant_id,
            addon_code,
            extra_dependencies=list(dependencies or []),
            grace_policy=grace_policy,
            operation=operation,
            visited={addon_code},
        )

    async def _check(
        self,
        tenant_id: str,
        addon_code: str,
        *,
        extra_dependencies: list[str],
        grace_policy: GracePolicy,
        operation: OperationClass,
        visited: set[str],
    ) -> EntitlementVerdict:
        verdict = apply_grace_policy(
            await self.evaluate(tenant_id, addon_code), grace_policy, operation
        )
        if not verdict.entitled:
            return verdict

        definition = await self.get_definition(addon_code)
        base = base_addon_code(addon_code)
        if definition is None and base:
            definition = await self.get_definition(base)
        declared = list(definition.dependencies or []) if definition else []

        for dependency in _ordered_unique([*declared, *extra_dependencies]):
            if dependency in visited:
                continue
            dep_verdict = await self._check(
                tenant_id,
                dependency,
                extra_dependencies=[],
                grace_policy=grace_policy,
                operation=operation,
                visited=visited | {dependency},
            )
            if dep_verdict.entitled:
                continue
            return self._dependency_denial(addon_code, verdict, dependency, dep_verdict)

        return verdict

    @staticmethod
    def _dependency_denial(
        addon_code: str,
        own: EntitlementVerdict,
        dependency: str,
        dep_verdict: EntitlementVerdict,
    ) -> EntitlementVerdict:
        # A failure deeper in the chain names the add-on that is actually missing
        if dep_verdict.dependency is not None:
            offending, reason = dep_verdict.dependency, dep_verdict.reason_code
        elif dep_verdict.state == EntitlementState.NOT_INSTALLED:
            offending, reason = dependency, ReasonCode.ADDON_DEPENDENCY_MISSING
        else:
            offending, reason = dependency, ReasonCode.ADDON_DEPENDENCY_EXPIRED

        if reason == ReasonCode.ADDON_DEPENDENCY_MISSING:
            message = f"This feature requires '{offending}' add-on to be installed first."
        else:
            message = (
                f"Required add-on '{offending}' has expired. "
                f"Please renew it to continue using {addon_code}."
            )
        return own.model_copy(
            update={
                "entitled": False,
                "reason_code": reason,
                "dependency": offending,
                "message": message,
                "valid_until": dep_verdict.valid_until,
            }
        )

    async def check_directory(
        self,
        tenant_id: str,
        *,
        grace_policy: GracePolicy = GracePolicy.ALLOW,
        operation: OperationClass = OperationClass.READ,
    ) -> EntitlementVerdict:
        """Employee directory: granted when either payroll or hrms is entitled."""
        for addon_code in DIRECTORY_ADDONS:
            verdict = await self.check_addon(
                tenant_id, addon_code, grace_policy=grace_policy, operation=operation
            )
            if verdict.entitled:
                return verdict
        return EntitlementVerdict(
            addon=DIRECTORY_FALLBACK_ADDON,
            entitled=False,
            state=EntitlementState.NOT_INSTALLED,
            reason_code=ReasonCode.ADDON_NOT_INSTALLED,
            message="Employee directory requires the HRMS or Payroll add-on.",
        )

    async def list_entitlements(self, tenant_id: str) -> dict[str, EntitlementVerdict]:
        """Verdict for every add-on the tenant has an installation row for."""
        stmt = (
            select(AddonDefinition.slug)
            .join(AddonInstallation, AddonInstallation.addon_id == AddonDefinition.id)
            .where(AddonInstallation.tenant_id == tenant_id)
        )
        slugs = (await self.db.execute(stmt)).scalars().all()
        return {slug: await self.check_addon(tenant_id, slug) for slug in slugs}

    # ==================== Transitions ====================

    async def sync_expired_addons(self, now: datetime | None = None) -> dict[str, int]:
        """
        Move installations whose time windows have closed.

        trial past its end -> expired; active past paid-until -> grace_period
        while the grace window is open, else expired; grace_period past its
        grace window -> expired.
        """
        now = now or self.clock()
        counts = {"trial_expired": 0, "entered_grace": 0, "expired": 0, "grace_expired": 0}

        async with transaction(self.db):
            result = await self.db.execute(
                select(AddonInstallation).where(
                    AddonInstallation.status.in_(
                        [
                            InstallationStatus.TRIAL.value,
                            InstallationStatus.ACTIVE.value,
                            InstallationStatus.GRACE_PERIOD.value,
                        ]
                    )
                )
            )
            for installation in result.scalars().all():
                transition = self._expire_transition(installation, now)
                if transition:
                    counts[transition] += 1

        if any(counts.values()):
            logger.info("addons.expiry_sweep", **counts)
        return counts

    def _expire_transition(self, installation: AddonInstallation, now: datetime) -> str | None:
        trial_ends = as_utc(installation.trial_ends_at)
        paid_until = as_utc(installation.current_period_end)
        grace_until = as_utc(installation.grace_until)

        if installation.status == InstallationStatus.TRIAL.value:
            if trial_ends is not None and trial_ends < now:
                installation.status = InstallationStatus.EXPIRED.value
                return "trial_expired"
            return None

        if installation.status == InstallationStatus.ACTIVE.value:
            if paid_until is None or paid_until >= now:
                return None
            billing = (installation.subscription_status or "").lower() or None
            if grace_until is None and billing in _LAPSED_BILLING_STATUSES:
                grace_until = paid_until + timedelta(days=self.grace_period_days)
            if grace_until is not None and grace_until >= now:
                installation.status = InstallationStatus.GRACE_PERIOD.value
                installation.grace_until = grace_until
                return "entered_grace"
            installation.status = InstallationStatus.EXPIRED.value
            return "expired"

        if grace_until is None or grace_until < now:
            installation.status = InstallationStatus.EXPIRED.value
            return "grace_expired"
        return None

    async def apply_provider_event(
        self,
        tenant_id: str,
        addon_code: str,
        event_type: str,
        entity: dict[str, Any],
    ) -> AddonInstallation | None:
        """Apply a recurring-billing event (activated, charged, cancelled, halted)."""
        # Provider notes carry either the slug or the definition id
        definition = await self.get_definition(addon_code) or await self.db.get(
            AddonDefinition, addon_code
        )
        if definition is None:
            logger.warning(
                "addons.provider_event_unknown_addon", addon=addon_code, event_type=event_type
            )
            return None
        addon_code = definition.slug

        installation = await self._find_installation(tenant_id, addon_code)
        now = self.clock()

        if installation is None:
            if event_type != "subscription.activated":
                logger.warning(
                    "addons.provider_event_without_installation",
                    tenant_id=tenant_id,
                    addon=addon_code,
                    event_type=event_type,
                )
                return None
            installation = AddonInstallation(
                tenant_id=tenant_id,
                addon_id=definition.id,
                status=InstallationStatus.ACTIVE.value,
                installed_at=now,
                metadata_json={},
            )
            self.db.add(installation)

        if entity.get("id"):
            installation.provider_subscription_id = entity["id"]

        if event_type in ("subscription.activated", "subscription.charged"):
            installation.status = InstallationStatus.ACTIVE.value
            installation.subscription_status = ProviderSubscriptionStatus.ACTIVE.value
            installation.grace_until = None
            if entity.get("current_start"):
                installation.current_period_start = _from_epoch(entity["current_start"])
            if entity.get("current_end"):
                installation.current_period_end = _from_epoch(entity["current_end"])
        elif event_type == "subscription.cancelled":
            installation.subscription_status = ProviderSubscriptionStatus.CANCELLED.value
            installation.cancelled_at = now
        elif event_type == "subscription.halted":
            installation.subscription_status = ProviderSubscriptionStatus.HALTED.value
            installation.grace_until = now + timedelta(days=self.grace_period_days)

        await self.db.flush()
        logger.info(
            "addons.provider_event_applied",
            tenant_id=tenant_id,
            addon=addon_code,
            event_type=event_type,
            status=installation.status,
        )
        return installation


def _from_epoch(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=utc_now().tzinfo)
