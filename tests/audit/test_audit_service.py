"""
Tests for the audit service.
"""

import pytest

from conftest import TENANT_ID
from dotmac.entitlements.audit import ActivitySeverity, ActivityType, AuditService

pytestmark = pytest.mark.integration


async def test_rows_join_the_callers_transaction(db_session):
    audit = AuditService(db_session)

    await audit.log_activity(
        ActivityType.PLAN_SELECTED,
        action="subscription.plan_selected",
        description="Plan selected",
        tenant_id=TENANT_ID,
        details={"plan_id": "p1"},
    )
    await db_session.rollback()

    assert await audit.get_recent_activities(TENANT_ID) == []


async def test_standalone_rows_are_committed(db_session):
    activity = await AuditService().log_activity(
        ActivityType.ACCESS_DENIED_FEATURE,
        action="ACCESS_DENIED_FEATURE",
        description="Feature analytics not available",
        tenant_id=TENANT_ID,
        user_id="user-1",
        severity=ActivitySeverity.MEDIUM,
        ip_address="10.0.0.1",
    )

    stored = await AuditService(db_session).get_recent_activities(TENANT_ID)

    assert [row.id for row in stored] == [activity.id]
    assert stored[0].severity == "medium"
    assert stored[0].ip_address == "10.0.0.1"


async def test_filter_by_type_and_tenant(db_session):
    audit = AuditService(db_session)
    for tenant_id, activity_type in [
        (TENANT_ID, ActivityType.PLAN_SELECTED),
        (TENANT_ID, ActivityType.SUBSCRIPTION_CANCELLED),
        ("tenant-other", ActivityType.PLAN_SELECTED),
    ]:
        await audit.log_activity(
            activity_type, action=activity_type.value, description="-", tenant_id=tenant_id
        )
    await db_session.commit()

    selected = await audit.get_recent_activities(
        TENANT_ID, activity_type=ActivityType.PLAN_SELECTED
    )

    assert len(selected) == 1
    assert selected[0].tenant_id == TENANT_ID
    assert len(await audit.get_recent_activities(TENANT_ID, limit=1)) == 1
