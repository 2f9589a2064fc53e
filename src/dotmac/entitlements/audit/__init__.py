"""
Audit trail for subscription changes and access denials.
"""

from dotmac.entitlements.audit.models import (
    ActivitySeverity,
    ActivityType,
    AuditActivity,
    AuditActivityCreate,
)
from dotmac.entitlements.audit.service import AuditService, AuditSink

__all__ = [
    "ActivitySeverity",
    "ActivityType",
    "AuditActivity",
    "AuditActivityCreate",
    "AuditService",
    "AuditSink",
]
