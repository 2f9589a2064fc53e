"""
Audit service for subscription and entitlement activities.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from dotmac.entitlements.audit.models import (
    ActivitySeverity,
    ActivityType,
    AuditActivity,
    AuditActivityCreate,
)
from dotmac.entitlements.db import get_session_maker
from dotmac.entitlements.logging import log_audit_event


class AuditSink(Protocol):
    """Anything that can record an audit activity."""

    async def log_activity(
        self,
        activity_type: ActivityType,
        action: str,
        description: str,
        *,
        tenant_id: str,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        severity: ActivitySeverity = ActivitySeverity.LOW,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> Any: ...


class AuditService:
    """
    Service for audit activity tracking and retrieval.

    With a session, rows join the caller's transaction and are committed with
    it. Without one, each row is written and committed in its own session.
    """

    def __init__(self, session: AsyncSession | None = None):
        self._session = session

    @asynccontextmanager
    async def _get_session(self) -> AsyncIterator[tuple[AsyncSession, bool]]:
        if self._session is not None:
            yield self._session, False
            return
        async with get_session_maker()() as session:
            yield session, True

    async def log_activity(
        self,
        activity_type: ActivityType,
        action: str,
        description: str,
        *,
        tenant_id: str,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        severity: ActivitySeverity = ActivitySeverity.LOW,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> AuditActivity:
        """Log an audit activity."""
        activity_data = AuditActivityCreate(
            activity_type=activity_type,
            action=action,
            description=description,
            severity=severity,
            tenant_id=tenant_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            request_id=request_id,
        )

        async with self._get_session() as (session, owned):
            activity = AuditActivity(**activity_data.model_dump(mode="json", exclude_none=True))
            session.add(activity)
            if owned:
                await session.commit()
            else:
                await session.flush()

        log_audit_event(
            action,
            category=activity_type.value,
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            activity_id=activity.id,
        )
        return activity

    async def get_recent_activities(
        self,
        tenant_id: str,
        *,
        activity_type: ActivityType | None = None,
        limit: int = 50,
    ) -> list[AuditActivity]:
        """Newest activities for a tenant."""
        stmt = select(AuditActivity).where(AuditActivity.tenant_id == tenant_id)
        if activity_type is not None:
            stmt = stmt.where(AuditActivity.activity_type == activity_type.value)
        stmt = stmt.order_by(desc(AuditActivity.timestamp)).limit(limit)

        async with self._get_session() as (session, _owned):
            result = await session.execute(stmt)
            return list(result.scalars().all())
