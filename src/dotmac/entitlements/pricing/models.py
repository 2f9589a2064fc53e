"""
Promotional offers and coupons.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base, TimestampMixin


class OfferType(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"


class BillingOffer(Base, TimestampMixin):
    """Discount applied to quotes; without a coupon code it applies automatically."""

    __tablename__ = "billing_offers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    coupon_code: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    offer_type: Mapped[str] = mapped_column(String(10), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    # Optional filters; null matches everything
    country_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    plan_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)

    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemption_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def is_exhausted(self) -> bool:
        return bool(self.max_redemptions) and (self.redemption_count or 0) >= self.max_redemptions

    def __repr__(self) -> str:
        return f"<BillingOffer(name={self.name!r}, coupon={self.coupon_code!r})>"
