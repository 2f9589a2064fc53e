"""
Audit activity model for subscription and entitlement events.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base, StrictTenantMixin, TimestampMixin, utc_now


class ActivityType(str, Enum):
    """Types of activities that can be audited."""

    # Subscription lifecycle
    PLAN_SELECTED = "subscription.plan_selected"
    CHECKOUT_STARTED = "subscription.checkout_started"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    UPGRADE_REQUESTED = "subscription.upgrade_requested"
    UPGRADE_CANCELLED = "subscription.upgrade_cancelled"
    DOWNGRADE_SCHEDULED = "subscription.downgrade_scheduled"
    DOWNGRADE_CANCELLED = "subscription.downgrade_cancelled"
    DOWNGRADE_APPLIED = "subscription.downgrade_applied"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"

    # Payments
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_UNMATCHED = "payment.capture_unmatched"

    # Entitlements
    ACCESS_DENIED_ADDON = "access.denied.addon"
    ACCESS_DENIED_FEATURE = "access.denied.feature"


class ActivitySeverity(str, Enum):
    """Severity levels for activities."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditActivity(Base, TimestampMixin, StrictTenantMixin):
    """Audit activity tracking table."""

    __tablename__ = "audit_activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # Activity identification
    activity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(
        String(20), default=ActivitySeverity.LOW.value, index=True
    )

    # Who and when
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )

    # What
    resource_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)

    # Details
    description: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Context
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_audit_activities_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_audit_activities_type_timestamp", "activity_type", "timestamp"),
    )


class AuditActivityCreate(BaseModel):
    """Validated input for a new audit row."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    activity_type: ActivityType
    action: str = Field(min_length=1, max_length=100)
    description: str
    severity: ActivitySeverity = ActivitySeverity.LOW
    tenant_id: str = Field(min_length=1)
    user_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    request_id: str | None = None
