"""
Add-on catalog and tenant installation tables.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dotmac.entitlements.db import Base, StrictTenantMixin, TimestampMixin


class AddonLifecycle(str, Enum):
    """Publication state of an add-on definition."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class InstallationStatus(str, Enum):
    """Stored status of an installation. A missing row means not installed."""

    TRIAL = "trial"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    DISABLED = "disabled"


class ProviderSubscriptionStatus(str, Enum):
    """Recurring-billing status reported by the payment provider."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    HALTED = "halted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AddonDefinition(Base, TimestampMixin):
    """Catalog entry for a paid add-on."""

    __tablename__ = "addon_definitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    # Hard dependencies: every listed slug must itself be entitled
    dependencies: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AddonLifecycle.PUBLISHED.value
    )

    country_configs: Mapped[list["AddonCountryConfig"]] = relationship(
        back_populates="addon", cascade="all, delete-orphan", lazy="selectin"
    )

    def config_for(self, country_code: str) -> "AddonCountryConfig | None":
        for config in self.country_configs:
            if config.country_code == country_code:
                return config
        return None


class AddonCountryConfig(Base, TimestampMixin):
    """Per-country pricing, trial length and availability for an add-on."""

    __tablename__ = "addon_country_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    addon_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("addon_definitions.id", ondelete="CASCADE"), nullable=False
    )
    country_code: Mapped[str] = mapped_column(String(10), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    available_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    coming_soon: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    addon: Mapped[AddonDefinition] = relationship(back_populates="country_configs")

    __table_args__ = (UniqueConstraint("addon_id", "country_code", name="uq_addon_country"),)


class AddonInstallation(Base, TimestampMixin, StrictTenantMixin):
    """A tenant's installation of one add-on."""

    __tablename__ = "addon_installations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    addon_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("addon_definitions.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    subscription_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Paid-until
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, index=True
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (UniqueConstraint("tenant_id", "addon_id", name="uq_tenant_addon"),)
