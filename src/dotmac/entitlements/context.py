"""
Typed request context.

Authentication and tenant resolution produce a :class:`RequestContext`; handlers
and the access gate receive it explicitly.
"""

from enum import Enum

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field

from dotmac.entitlements.countries import normalize_country_code


class OperationClass(str, Enum):
    """Whether a request only reads or also mutates tenant data."""

    READ = "read"
    WRITE = "write"

    @classmethod
    def from_method(cls, method: str) -> "OperationClass":
        return cls.READ if method.upper() in ("GET", "HEAD") else cls.WRITE


class RequestContext(BaseModel):
    """Caller identity and tenant scope for one request."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str | None = None
    user_id: str | None = None
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    country_code: str | None = Field(None, description="Tenant billing country (ISO-like)")
    country_scope: list[str] | None = Field(
        None, description="Countries an administrative caller may act on; None means all"
    )
    request_id: str | None = None
    ip_address: str | None = None

    @property
    def has_tenant(self) -> bool:
        return bool(self.tenant_id)


def _split_header(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


async def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency building the context for the current request.

    An upstream authentication middleware may store a ready context on
    ``request.state.context``. Otherwise the context is read from the trusted
    gateway headers (X-Tenant-ID, X-User-ID, X-User-Roles, X-User-Permissions,
    X-Tenant-Country, X-Country-Scope).
    """
    existing = getattr(request.state, "context", None)
    if isinstance(existing, RequestContext):
        return existing

    headers = request.headers
    country = headers.get("X-Tenant-Country")
    scope = _split_header(headers.get("X-Country-Scope"))
    context = RequestContext(
        tenant_id=headers.get("X-Tenant-ID") or None,
        user_id=headers.get("X-User-ID") or None,
        roles=_split_header(headers.get("X-User-Roles")),
        permissions=_split_header(headers.get("X-User-Permissions")),
        country_code=normalize_country_code(country) if country else None,
        country_scope=[normalize_country_code(c) for c in scope] if scope else None,
        request_id=headers.get("X-Request-ID") or getattr(request.state, "correlation_id", None),
        ip_address=request.client.host if request.client else None,
    )
    request.state.context = context
    request.state.tenant_id = context.tenant_id
    return context
