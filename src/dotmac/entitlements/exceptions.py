"""
Entitlement and subscription lifecycle exceptions.

Every error carries a stable machine-readable code and the HTTP status the
API layer should answer with.
"""

from typing import Any


class EntitlementError(Exception):
    """
    Base error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "ENTITLEMENT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(EntitlementError):
    """Malformed or unsupported input."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=400,
            context={"field": field} if field else None,
        )


class TenantRequiredError(EntitlementError):
    """The caller is not associated with a tenant."""

    def __init__(self, message: str = "Tenant context is required") -> None:
        super().__init__(
            message,
            "TENANT_REQUIRED",
            status_code=401,
            recovery_hint="Complete tenant setup before managing a subscription",
        )


# ============================================================
# Plans
# ============================================================


class PlanError(EntitlementError):
    """Plan catalog errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PLAN_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class PlanNotFoundError(PlanError):
    """Plan does not exist or is inactive."""

    def __init__(self, message: str, plan_id: str | None = None, plan_code: str | None = None):
        context = {}
        if plan_id:
            context["plan_id"] = plan_id
        if plan_code:
            context["plan_code"] = plan_code

        super().__init__(
            message,
            context=context,
            recovery_hint="Pick an active plan from the plan list",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class PlanArchivedError(PlanError):
    """Archived plans cannot be newly selected."""

    def __init__(self, plan_code: str) -> None:
        super().__init__(f"Plan {plan_code} is archived", context={"plan_code": plan_code})
        self.error_code = "PLAN_ARCHIVED"


class PlanNotPublicError(PlanError):
    """Plan is not offered for self-service selection."""

    def __init__(self, plan_code: str) -> None:
        super().__init__(f"Plan {plan_code} is not available", context={"plan_code": plan_code})
        self.error_code = "PLAN_NOT_PUBLIC"


class PlanCountryMismatchError(PlanError):
    """Plan region differs from the tenant's billing country."""

    def __init__(self, plan_code: str, plan_country: str | None, tenant_country: str) -> None:
        super().__init__(
            f"Plan {plan_code} is not available in {tenant_country}",
            context={
                "plan_code": plan_code,
                "plan_country": plan_country,
                "tenant_country": tenant_country,
            },
            recovery_hint="Select a plan offered in your billing country",
        )
        self.error_code = "PLAN_COUNTRY_MISMATCH"


class BillingCycleNotAvailableError(PlanError):
    """Requested billing cycle is not enabled for the plan."""

    def __init__(self, plan_code: str, cycle: str) -> None:
        super().__init__(
            f"Billing cycle {cycle} is not available for plan {plan_code}",
            context={"plan_code": plan_code, "billing_cycle": cycle},
        )
        self.error_code = "BILLING_CYCLE_NOT_AVAILABLE"


# ============================================================
# Subscriptions
# ============================================================


class SubscriptionError(EntitlementError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class NoSubscriptionError(SubscriptionError):
    """Tenant has no subscription row."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            "No subscription found",
            context={"tenant_id": tenant_id},
            recovery_hint="Select a plan first",
        )
        self.error_code = "NO_SUBSCRIPTION"
        self.status_code = 404


class SubscriptionStateError(SubscriptionError):
    """Requested transition is not valid from the current state."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        requested_state: str | None = None,
        error_code: str = "INVALID_SUBSCRIPTION_STATUS",
    ):
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
        )
        self.error_code = error_code
        self.status_code = 409


class SubscriptionExistsError(SubscriptionStateError):
    """An active or trialing subscription already exists."""

    def __init__(self, current_state: str) -> None:
        super().__init__(
            "An active subscription already exists; use plan change instead",
            current_state=current_state,
            error_code="SUBSCRIPTION_EXISTS",
        )


class NoPendingDowngradeError(SubscriptionStateError):
    """Cancel-downgrade called without a scheduled downgrade."""

    def __init__(self, current_state: str) -> None:
        super().__init__(
            "No pending downgrade to cancel",
            current_state=current_state,
            error_code="NO_PENDING_DOWNGRADE",
        )


class PlanChangeError(SubscriptionError):
    """Plan change requested in the wrong price direction."""

    def __init__(self, message: str, error_code: str, current_price: Any, new_price: Any) -> None:
        super().__init__(
            message,
            context={"current_price": str(current_price), "new_price": str(new_price)},
        )
        self.error_code = error_code


class InvalidUpgradeError(PlanChangeError):
    """Upgrade target is not more expensive than the current plan."""

    def __init__(self, current_price: Any, new_price: Any) -> None:
        super().__init__(
            "Upgrade target must cost more than the current plan",
            "INVALID_UPGRADE",
            current_price,
            new_price,
        )


class InvalidDowngradeError(PlanChangeError):
    """Downgrade target is not cheaper than the current plan."""

    def __init__(self, current_price: Any, new_price: Any) -> None:
        super().__init__(
            "Downgrade target must cost less than the current plan",
            "INVALID_DOWNGRADE",
            current_price,
            new_price,
        )


# ============================================================
# Payments
# ============================================================


class PaymentError(EntitlementError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "PAYMENT_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class PaymentNotFoundError(PaymentError):
    """Payment does not exist for this tenant."""

    def __init__(self, payment_id: str | None = None) -> None:
        super().__init__("Payment not found", context={"payment_id": payment_id})
        self.error_code = "PAYMENT_NOT_FOUND"
        self.status_code = 404


class NoPendingPaymentError(PaymentError):
    """Checkout requested without a pending payment."""

    def __init__(self) -> None:
        super().__init__("No pending payment", recovery_hint="Start checkout first")
        self.error_code = "NO_PENDING_PAYMENT"
        self.status_code = 404


class InvalidPaymentStateError(PaymentError):
    """Payment is not in a state that allows the operation."""

    def __init__(self, payment_id: str, current_status: str) -> None:
        super().__init__(
            f"Payment is {current_status}",
            context={"payment_id": payment_id, "current_state": current_status},
        )
        self.error_code = "INVALID_PAYMENT_STATE"
        self.status_code = 409


class PaymentMismatchError(PaymentError):
    """Payment does not belong to the subscription's pending change."""

    def __init__(self, payment_id: str, subscription_status: str | None) -> None:
        super().__init__(
            "Payment does not match the pending subscription change",
            context={"payment_id": payment_id, "current_state": subscription_status},
        )
        self.error_code = "PAYMENT_MISMATCH"
        self.status_code = 409


class PaymentAlreadyCapturedError(PaymentError):
    """Pending upgrade cannot be cancelled after capture."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(
            "Payment already captured; the upgrade is being applied",
            context={"payment_id": payment_id},
        )
        self.error_code = "PAYMENT_ALREADY_CAPTURED"
        self.status_code = 409


class SignatureRequiredError(PaymentError):
    """Provider signature missing outside mock mode."""

    def __init__(self) -> None:
        super().__init__("Payment signature is required")
        self.error_code = "SIGNATURE_REQUIRED"


class NoOrderError(PaymentError):
    """Verification attempted before a provider order exists."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(
            "No provider order exists for this payment",
            context={"payment_id": payment_id},
            recovery_hint="Create the checkout order before verifying",
        )
        self.error_code = "NO_ORDER"


class PaymentVerificationError(PaymentError):
    """Provider signature did not verify."""

    def __init__(self, payment_id: str, reason: str) -> None:
        super().__init__(
            "Payment verification failed",
            context={"payment_id": payment_id, "reason": reason},
        )
        self.error_code = "PAYMENT_VERIFICATION_FAILED"


class GatewayError(PaymentError):
    """Payment provider call failed."""

    def __init__(self, message: str, provider_status: int | None = None) -> None:
        super().__init__(message, context={"provider_status": provider_status})
        self.error_code = "GATEWAY_ERROR"
        self.status_code = 502


# ============================================================
# Pricing
# ============================================================


class InvalidCouponError(EntitlementError):
    """Coupon unknown, expired, exhausted or not applicable."""

    def __init__(self, message: str, coupon_code: str) -> None:
        super().__init__(
            message, "INVALID_COUPON", status_code=400, context={"coupon_code": coupon_code}
        )


# ============================================================
# Webhooks
# ============================================================


class WebhookError(EntitlementError):
    """Webhook processing errors."""

    def __init__(self, message: str, status_code: int = 400, error_code: str = "WEBHOOK_ERROR"):
        super().__init__(message, error_code, status_code=status_code)


class WebhookSignatureError(WebhookError):
    """Webhook signature missing or invalid."""

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message, status_code=status_code, error_code="WEBHOOK_SIGNATURE_INVALID")


# ============================================================
# Access
# ============================================================


class AccessDeniedError(EntitlementError):
    """Base for gate denials; ``error`` distinguishes the denial kind."""

    error = "ACCESS_DENIED"

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 403,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(message, error_code, status_code, context, recovery_hint)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["error"] = self.error
        return data


class UnauthorizedError(AccessDeniedError):
    """No tenant could be resolved for the request."""

    error = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication with a tenant is required") -> None:
        super().__init__(message, "UNAUTHORIZED", status_code=401)


class PermissionDeniedError(AccessDeniedError):
    """Caller lacks the required permission."""

    error = "PERMISSION_DENIED"

    def __init__(self, permission: str) -> None:
        super().__init__(
            f"Permission denied. Required: {permission}",
            "PERMISSION_DENIED",
            context={"permission": permission},
        )


class FeatureNotAvailableError(AccessDeniedError):
    """Feature is not enabled for the tenant."""

    error = "FEATURE_NOT_AVAILABLE"

    def __init__(self, feature: str, upgrade_url: str | None = None) -> None:
        super().__init__(
            f"Feature '{feature}' is not available on your plan",
            "FEATURE_NOT_AVAILABLE",
            context={"feature": feature, "upgrade_url": upgrade_url},
            recovery_hint="Upgrade your plan to use this feature",
        )


class AddonAccessDeniedError(AccessDeniedError):
    """Add-on entitlement denied; ``error_code`` holds the subcode."""

    error = "ADDON_ACCESS_DENIED"

    def __init__(
        self,
        message: str,
        reason_code: str,
        addon: str,
        dependency: str | None = None,
        valid_until: str | None = None,
        upgrade_url: str | None = None,
    ):
        super().__init__(
            message,
            reason_code,
            context={
                "addon": addon,
                "dependency": dependency,
                "valid_until": valid_until,
                "upgrade_url": upgrade_url,
            },
        )
        self.addon = addon
        self.dependency = dependency


class CountryScopeViolationError(AccessDeniedError):
    """Administrative action outside the caller's country scope."""

    error = "COUNTRY_SCOPE_VIOLATION"

    def __init__(self, country_code: str) -> None:
        super().__init__(
            f"Country {country_code} is outside your scope",
            "COUNTRY_SCOPE_VIOLATION",
            context={"country_code": country_code},
        )
