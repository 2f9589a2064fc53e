"""
Payment gateway interface.

The lifecycle manager only talks to providers through this interface, so
tests and development run against :class:`MockPaymentGateway`.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class GatewayOrder(BaseModel):
    """Provider order plus the payload the client needs to open checkout."""

    order_id: str
    amount_minor: int
    currency: str
    receipt: str
    key_id: str | None = None
    checkout_payload: dict[str, Any] = Field(default_factory=dict)


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str | None) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected, received.strip())


class PaymentGateway(ABC):
    """Abstract payment provider."""

    name: str = "gateway"

    def __init__(self, webhook_secret: str = ""):
        self.webhook_secret = webhook_secret

    @property
    def is_mock(self) -> bool:
        return False

    @property
    def has_webhook_secret(self) -> bool:
        return bool(self.webhook_secret)

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        """Create a provider order for ``amount_minor`` in the currency's minor unit."""

    @abstractmethod
    def verify_payment_signature(
        self, order_id: str, payment_id: str, signature: str | None
    ) -> bool:
        """Check the signature returned to the client after checkout."""

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 hex of the raw body under the webhook secret."""
        if not self.webhook_secret:
            return False
        return signatures_match(hmac_sha256_hex(self.webhook_secret, body), signature)

    async def close(self) -> None:
        """Release provider connections."""
