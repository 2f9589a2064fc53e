"""
FastAPI application factory for the billing and entitlement service.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI

from dotmac.entitlements.access.denial import DenialAuditSink
from dotmac.entitlements.access.permissions import ContextPermissionChecker, PermissionChecker
from dotmac.entitlements.api.middleware import EntitlementErrorMiddleware
from dotmac.entitlements.api.rate_limit import (
    RateLimitExceeded,
    _rate_limit_exceeded_handler,
    limiter,
)
from dotmac.entitlements.api.router import router
from dotmac.entitlements.audit import AuditService
from dotmac.entitlements.cache import CacheBackend, build_cache_backend
from dotmac.entitlements.db import check_database_health
from dotmac.entitlements.logging import setup_logging
from dotmac.entitlements.payments import PaymentGateway, build_gateway
from dotmac.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    config: Settings = app.state.settings
    setup_logging(config)
    logger.info(
        "service.startup.complete",
        service=config.app_name,
        version=config.app_version,
        environment=config.environment.value,
        gateway=app.state.gateway.name,
    )

    yield

    try:
        await app.state.gateway.close()
        await app.state.cache.close()
    except Exception as e:
        logger.error("service.shutdown.cleanup_failed", error=str(e))
    logger.info("service.shutdown.complete")


def create_app(
    config: Settings | None = None,
    *,
    cache: CacheBackend | None = None,
    gateway: PaymentGateway | None = None,
    permission_checker: PermissionChecker | None = None,
    denial_sink: DenialAuditSink | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_settings()

    app = FastAPI(
        title="DotMac Entitlements",
        description="Tenant subscription lifecycle and entitlement engine",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan,
        docs_url="/docs" if not config.is_production else None,
        redoc_url="/redoc" if not config.is_production else None,
    )

    app.state.settings = config
    app.state.cache = cache or build_cache_backend(config)
    app.state.gateway = gateway or build_gateway(config)
    app.state.permission_checker = permission_checker or ContextPermissionChecker()
    app.state.denial_sink = denial_sink or DenialAuditSink(
        AuditService(),
        window_seconds=config.audit.denial_window_seconds,
        maxsize=config.audit.denial_cache_size,
    )

    app.add_middleware(
        EntitlementErrorMiddleware,
        correlation_header=config.observability.correlation_id_header,
        path_prefix=config.api_prefix,
    )

    # Add rate limiting support
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(router, prefix=config.api_prefix)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": config.app_version,
            "environment": config.environment.value,
        }

    @app.get("/health/ready")
    async def readiness_check() -> dict[str, Any]:
        """Readiness check including the database."""
        database_ok = await check_database_health()
        return {"status": "ready" if database_ok else "not ready", "database": database_ok}

    return app
