"""Deterministic gateway for development and tests."""

from typing import Any

import structlog

from dotmac.entitlements.payments.gateway import GatewayOrder, PaymentGateway

logger = structlog.get_logger(__name__)


class MockPaymentGateway(PaymentGateway):
    """Orders are derived from the receipt and any signature is accepted."""

    name = "mock"

    def __init__(self, webhook_secret: str = ""):
        super().__init__(webhook_secret=webhook_secret)
        self.orders: dict[str, GatewayOrder] = {}

    @property
    def is_mock(self) -> bool:
        return True

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        order_id = f"order_mock_{receipt.removeprefix('rcpt_')}"
        order = GatewayOrder(
            order_id=order_id,
            amount_minor=amount_minor,
            currency=currency,
            receipt=receipt,
            checkout_payload={
                "provider": self.name,
                "order_id": order_id,
                "amount": amount_minor,
                "currency": currency,
                "notes": notes or {},
            },
        )
        self.orders[order_id] = order
        logger.debug("mock_gateway.order_created", order_id=order_id, amount=amount_minor)
        return order

    def verify_payment_signature(
        self, order_id: str, payment_id: str, signature: str | None
    ) -> bool:
        return True
