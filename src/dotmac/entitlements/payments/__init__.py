"""
Payment provider integration.
"""

import structlog

from dotmac.entitlements.payments.gateway import GatewayOrder, PaymentGateway
from dotmac.entitlements.payments.mock import MockPaymentGateway
from dotmac.entitlements.payments.razorpay import RazorpayGateway
from dotmac.entitlements.settings import GatewayProvider, Settings

logger = structlog.get_logger(__name__)


def build_gateway(config: Settings) -> PaymentGateway:
    """Create the configured gateway. Called once at application startup."""
    gateway_config = config.payment_gateway
    if gateway_config.provider == GatewayProvider.RAZORPAY:
        logger.info("payments.gateway_selected", provider="razorpay")
        return RazorpayGateway(
            key_id=gateway_config.key_id,
            key_secret=gateway_config.key_secret,
            webhook_secret=gateway_config.webhook_secret,
            base_url=gateway_config.base_url,
            timeout=gateway_config.timeout_seconds,
            max_retries=gateway_config.max_retries,
            backoff_seconds=gateway_config.backoff_seconds,
        )

    logger.info("payments.gateway_selected", provider="mock")
    return MockPaymentGateway(webhook_secret=gateway_config.webhook_secret)


__all__ = [
    "GatewayOrder",
    "MockPaymentGateway",
    "PaymentGateway",
    "RazorpayGateway",
    "build_gateway",
]
