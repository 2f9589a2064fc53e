"""
Structured logging setup using structlog directly.

Audit events are structured logs with audit_* fields; durable audit rows are
written by :mod:`dotmac.entitlements.audit`.
"""

import logging

import structlog

from dotmac.entitlements.settings import Settings, settings


def setup_logging(config: Settings | None = None) -> None:
    """
    Setup structured logging with structlog.

    Values bound with ``structlog.contextvars`` (the request correlation ID) are
    merged into every event. Falls back to the global settings.
    """
    config = config or settings
    logging.basicConfig(format="%(message)s", level=config.observability.log_level.value)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if config.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_audit_logger() -> structlog.BoundLogger:
    """Logger reserved for audit events."""
    return structlog.get_logger("audit")


def log_audit_event(
    action: str,
    category: str,
    user_id: str | None = None,
    tenant_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    ip_address: str | None = None,
    **kwargs,
) -> None:
    """Log an audit event as a structured log entry."""
    get_audit_logger().info(
        action,
        audit_category=category,
        audit_user_id=user_id,
        audit_tenant_id=tenant_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        audit_ip_address=ip_address,
        **kwargs,
    )
