"""Quotes, offers and coupons."""

from dotmac.entitlements.pricing.models import BillingOffer, OfferType
from dotmac.entitlements.pricing.quote import (
    AppliedCoupon,
    AppliedOffer,
    QuoteResult,
    QuoteService,
    calculate_discount,
    calculate_tax,
)

__all__ = [
    "AppliedCoupon",
    "AppliedOffer",
    "BillingOffer",
    "OfferType",
    "QuoteResult",
    "QuoteService",
    "calculate_discount",
    "calculate_tax",
]
