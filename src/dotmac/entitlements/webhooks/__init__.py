"""Payment provider webhooks."""

from dotmac.entitlements.webhooks.models import WebhookEvent, WebhookEventStatus
from dotmac.entitlements.webhooks.processor import (
    EVENT_ID_HEADER,
    SIGNATURE_HEADER,
    WebhookProcessor,
    derive_event_id,
)

__all__ = [
    "EVENT_ID_HEADER",
    "SIGNATURE_HEADER",
    "WebhookEvent",
    "WebhookEventStatus",
    "WebhookProcessor",
    "derive_event_id",
]
