"""
Feature flag definitions and tenant overrides.
"""

from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base, StrictTenantMixin, TimestampMixin


class FeatureFlag(Base, TimestampMixin):
    """Catalog entry for a gateable feature."""

    __tablename__ = "feature_flags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")

    # Global flags are on for everyone and cannot be switched off per tenant
    is_global: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    default_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_tier: Mapped[str | None] = mapped_column(String(20), nullable=True)


class TenantFeatureOverride(Base, TimestampMixin, StrictTenantMixin):
    """Explicit per-tenant enable/disable that supersedes tier defaults."""

    __tablename__ = "tenant_feature_overrides"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    feature_code: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_code", name="uq_tenant_feature_override"),
    )
