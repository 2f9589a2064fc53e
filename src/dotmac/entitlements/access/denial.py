"""
Rate-limited audit of access denials.

A blocked tenant retrying the same route would otherwise write one audit row
per request. Identical denials (tenant, event, route) are recorded at most
once per window.
"""

import time
from collections.abc import Callable
from typing import Any

import structlog
from cachetools import TTLCache  # type: ignore[import-untyped]

from dotmac.entitlements.audit import ActivitySeverity, ActivityType, AuditSink

logger = structlog.get_logger(__name__)

ACCESS_DENIED_ADDON = "ACCESS_DENIED_ADDON"
ACCESS_DENIED_FEATURE = "ACCESS_DENIED_FEATURE"

_ACTIVITY_TYPES = {
    ACCESS_DENIED_ADDON: ActivityType.ACCESS_DENIED_ADDON,
    ACCESS_DENIED_FEATURE: ActivityType.ACCESS_DENIED_FEATURE,
}


class DenialAuditSink:
    """Forwards denials to an audit sink, deduplicated per window. Never raises."""

    def __init__(
        self,
        audit: AuditSink,
        window_seconds: int = 60,
        maxsize: int = 10000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.audit = audit
        self._recent: TTLCache = TTLCache(maxsize=maxsize, ttl=window_seconds, timer=timer)

    @staticmethod
    def key_for(tenant_id: str, event: str, route: str | None) -> str:
        return f"{tenant_id}:{event}:{route or '-'}"

    async def record(
        self,
        *,
        tenant_id: str,
        event: str,
        route: str | None,
        description: str,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        """Returns True when an audit row was written."""
        key = self.key_for(tenant_id, event, route)
        if key in self._recent:
            return False
        self._recent[key] = True

        try:
            await self.audit.log_activity(
                _ACTIVITY_TYPES.get(event, ActivityType.ACCESS_DENIED_ADDON),
                action=event,
                description=description,
                tenant_id=tenant_id,
                user_id=user_id,
                resource_type="route",
                resource_id=route,
                severity=ActivitySeverity.MEDIUM,
                details=details,
                ip_address=ip_address,
                request_id=request_id,
            )
        except Exception:
            logger.warning(
                "denial_audit.write_failed",
                tenant_id=tenant_id,
                denial_event=event,
                exc_info=True,
            )
            return False
        return True
