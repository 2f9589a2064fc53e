"""HTTP surface of the entitlement engine."""

from dotmac.entitlements.api.app import create_app
from dotmac.entitlements.api.router import router

__all__ = ["create_app", "router"]
