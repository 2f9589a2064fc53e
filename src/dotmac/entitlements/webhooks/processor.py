"""
Provider webhook processing.

Verifies the signature over the raw body, records each event once, and
dispatches it to the handler for its type. Handler failures are recorded on
the event row instead of being returned to the provider.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.addons.entitlement import AddonEntitlementResolver
from dotmac.entitlements.db import transaction, utc_now
from dotmac.entitlements.exceptions import WebhookError, WebhookSignatureError
from dotmac.entitlements.payments.gateway import PaymentGateway
from dotmac.entitlements.subscriptions.service import SubscriptionLifecycleManager
from dotmac.entitlements.webhooks.models import WebhookEvent, WebhookEventStatus

logger = structlog.get_logger(__name__)

EVENT_ID_HEADER = "x-razorpay-event-id"
SIGNATURE_HEADER = "x-razorpay-signature"

Handler = Callable[[dict[str, Any], str], Awaitable[None]]


def _entity(payload: dict[str, Any], kind: str) -> dict[str, Any]:
    return ((payload.get("payload") or {}).get(kind) or {}).get("entity") or {}


def derive_event_id(payload: dict[str, Any], header_value: str | None) -> str:
    """Header id when present, else one derived from the account and timestamp."""
    if header_value:
        return header_value
    return f"rzp_{payload.get('account_id')}_{payload.get('created_at')}"


class WebhookProcessor:
    """Dedupes and dispatches provider events."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        lifecycle: SubscriptionLifecycleManager,
        addons: AddonEntitlementResolver,
    ):
        self.db = db
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.addons = addons
        self.handlers: dict[str, Handler] = {
            "payment.captured": self.handle_payment_captured,
            "payment.failed": self.handle_payment_failed,
            "subscription.activated": self.handle_addon_subscription,
            "subscription.charged": self.handle_addon_subscription,
            "subscription.cancelled": self.handle_addon_subscription,
            "subscription.halted": self.handle_addon_subscription,
        }

    async def process(
        self, body: bytes, signature: str | None, event_id_header: str | None = None
    ) -> dict[str, Any]:
        if not self.gateway.has_webhook_secret:
            logger.warning("webhook.secret_not_configured", gateway=self.gateway.name)
            return {
                "received": True,
                "warning": "Webhook secret not configured; event was not processed",
            }
        if not signature:
            raise WebhookSignatureError("Missing webhook signature", status_code=400)
        if not self.gateway.verify_webhook_signature(body, signature):
            logger.warning("webhook.invalid_signature", gateway=self.gateway.name)
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise WebhookError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise WebhookError("Webhook body must be a JSON object")

        event_type = payload.get("event")
        event_id = derive_event_id(payload, event_id_header)

        event = await self._record(event_id, event_type, payload)
        if event is None:
            logger.info("webhook.duplicate", event_id=event_id, event_type=event_type)
            return {"received": True, "duplicate": True}

        status = await self._dispatch(event_id, event_type, payload)
        return {"received": True, "event_id": event_id, "status": status}

    async def _record(
        self, event_id: str, event_type: str | None, payload: dict[str, Any]
    ) -> WebhookEvent | None:
        """Insert the event row; ``None`` when it was already delivered."""
        existing = await self.db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.gateway == self.gateway.name, WebhookEvent.event_id == event_id
            )
        )
        if existing.scalar_one_or_none() is not None:
            return None

        event = WebhookEvent(
            gateway=self.gateway.name,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PENDING.value,
        )
        try:
            async with transaction(self.db):
                self.db.add(event)
        except IntegrityError:
            # Lost the insert race to a concurrent delivery
            return None
        return event

    async def _dispatch(
        self, event_id: str, event_type: str | None, payload: dict[str, Any]
    ) -> str:
        handler = self.handlers.get(event_type or "")
        error: str | None = None
        if handler is None:
            logger.debug("webhook.unhandled_event", event_type=event_type)
        else:
            try:
                await handler(payload, event_type or "")
            except Exception as e:
                await self.db.rollback()
                logger.exception("webhook.handler_failed", event_id=event_id, event_type=event_type)
                error = str(e) or e.__class__.__name__

        status = WebhookEventStatus.FAILED if error else WebhookEventStatus.PROCESSED
        async with transaction(self.db):
            result = await self.db.execute(
                select(WebhookEvent).where(
                    WebhookEvent.gateway == self.gateway.name, WebhookEvent.event_id == event_id
                )
            )
            event = result.scalar_one()
            event.status = status.value
            event.error_message = error
            event.processed_at = utc_now()

        logger.info(
            "webhook.processed", event_id=event_id, event_type=event_type, status=status.value
        )
        return status.value

    # ==================== Handlers ====================

    async def handle_payment_captured(self, payload: dict[str, Any], event_type: str) -> None:
        payment = _entity(payload, "payment")
        order_id = payment.get("order_id")
        if not order_id:
            logger.warning("webhook.payment_without_order", payment_id=payment.get("id"))
            return
        await self.lifecycle.capture_by_order(order_id, payment.get("id"))

    async def handle_payment_failed(self, payload: dict[str, Any], event_type: str) -> None:
        payment = _entity(payload, "payment")
        order_id = payment.get("order_id")
        if not order_id:
            return
        await self.lifecycle.fail_by_order(order_id, payment.get("error_description"))

    async def handle_addon_subscription(self, payload: dict[str, Any], event_type: str) -> None:
        subscription = _entity(payload, "subscription")
        notes = subscription.get("notes") or {}
        tenant_id = notes.get("tenant_id")
        addon_ref = notes.get("addon") or notes.get("addon_id")
        if not tenant_id or not addon_ref:
            logger.warning(
                "webhook.subscription_without_notes",
                event_type=event_type,
                subscription_id=subscription.get("id"),
            )
            return
        async with transaction(self.db):
            await self.addons.apply_provider_event(tenant_id, addon_ref, event_type, subscription)
