"""
Global pytest configuration and fixtures for the entitlement engine tests.

Every test gets a fresh in-memory SQLite database (aiosqlite on a StaticPool)
with all tables created, and the module-level session factory pointed at it.
"""

import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, NamedTuple

# Use in-memory rate limiting and keep the limiter out of the way during tests
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT__STORAGE_URL", "memory://")
os.environ.setdefault("RATE_LIMIT__ENABLED", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dotmac.entitlements.addons.models import (  # noqa: E402
    AddonDefinition,
    AddonInstallation,
    InstallationStatus,
)
from dotmac.entitlements.audit import AuditService  # noqa: E402
from dotmac.entitlements.cache import LocalCacheBackend  # noqa: E402
from dotmac.entitlements.context import RequestContext  # noqa: E402
from dotmac.entitlements.db import configure_engine, get_session_maker  # noqa: E402
from dotmac.entitlements.features.service import FeatureResolver  # noqa: E402
from dotmac.entitlements.models import Base  # noqa: E402
from dotmac.entitlements.payments import MockPaymentGateway  # noqa: E402
from dotmac.entitlements.plans.service import PlanCatalog  # noqa: E402
from dotmac.entitlements.settings import Settings  # noqa: E402
from dotmac.entitlements.subscriptions.service import SubscriptionLifecycleManager  # noqa: E402

TENANT_ID = "tenant-acme"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Monotonic timer replacement for cachetools caches."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# ========================================
# Database
# ========================================


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite engine shared by every session in the test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_engine(test_engine)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    async with get_session_maker()() as session:
        yield session


# ========================================
# Collaborators
# ========================================


@pytest.fixture
def test_settings() -> Settings:
    return Settings(environment="test", testing=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def cache(cache_timer: FakeTimer) -> LocalCacheBackend:
    return LocalCacheBackend(maxsize=100, default_ttl=60, timer=cache_timer)


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def features(db_session: AsyncSession, cache: LocalCacheBackend) -> FeatureResolver:
    return FeatureResolver(db_session, cache, ttl=60)


@pytest.fixture
def manager(
    db_session: AsyncSession,
    features: FeatureResolver,
    gateway: MockPaymentGateway,
    test_settings: Settings,
    clock: FakeClock,
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        db_session,
        features=features,
        gateway=gateway,
        audit=AuditService(db_session),
        config=test_settings,
        clock=clock,
    )


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(
        tenant_id=TENANT_ID,
        user_id="user-owner",
        roles=["owner"],
        country_code="IN",
        request_id="req-1",
        ip_address="10.0.0.1",
    )


# ========================================
# Catalog data
# ========================================


class SeededPlan(NamedTuple):
    id: str
    code: str


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, SeededPlan]:
    """India free/starter/pro, a UK plan, an archived and a private plan, and a global plan.

    Ids and codes are captured up front since a rolled-back session expires
    the ORM instances.
    """
    catalog = PlanCatalog(db_session)
    created = {
        "free": await catalog.create_plan(
            code="india_free",
            name="Free",
            tier="free",
            base_price=0,
            currency="INR",
            country_code="IN",
            cycles={"monthly": 0},
            sort_order=0,
        ),
        "starter": await catalog.create_plan(
            code="india_starter",
            name="Starter",
            tier="starter",
            base_price=Decimal("999"),
            currency="INR",
            country_code="IN",
            cycles={"monthly": 999, "quarterly": 2700, "half_yearly": None, "yearly": 9999},
            sort_order=1,
        ),
        "pro": await catalog.create_plan(
            code="india_pro",
            name="Pro",
            tier="pro",
            base_price=Decimal("2499"),
            currency="INR",
            country_code="IN",
            cycles={"monthly": 2499, "yearly": 24990},
            sort_order=2,
        ),
        "uk_pro": await catalog.create_plan(
            code="uk_pro",
            name="Pro (UK)",
            tier="pro",
            base_price=Decimal("49"),
            currency="GBP",
            country_code="UK",
            cycles={"monthly": 49},
        ),
        "archived": await catalog.create_plan(
            code="india_legacy",
            name="Legacy",
            tier="starter",
            base_price=Decimal("499"),
            currency="INR",
            country_code="IN",
            cycles={"monthly": 499},
            is_archived=True,
        ),
        "private": await catalog.create_plan(
            code="india_partner",
            name="Partner",
            tier="enterprise",
            base_price=Decimal("4999"),
            currency="INR",
            country_code="IN",
            cycles={"monthly": 4999},
            is_public=False,
        ),
        "global": await catalog.create_plan(
            code="global_pro",
            name="Pro (Global)",
            tier="pro",
            base_price=Decimal("39"),
            currency="USD",
            cycles={"monthly": 39},
        ),
    }
    await db_session.commit()
    return {key: SeededPlan(plan.id, plan.code) for key, plan in created.items()}


async def create_addon(
    session: AsyncSession, slug: str, dependencies: list[str] | None = None
) -> AddonDefinition:
    addon = AddonDefinition(slug=slug, name=slug.title(), dependencies=dependencies or [])
    session.add(addon)
    await session.flush()
    return addon


async def install_addon(
    session: AsyncSession,
    addon: AddonDefinition,
    tenant_id: str = TENANT_ID,
    status: InstallationStatus | str = InstallationStatus.ACTIVE,
    **fields: Any,
) -> AddonInstallation:
    installation = AddonInstallation(
        tenant_id=tenant_id,
        addon_id=addon.id,
        status=InstallationStatus(status).value,
        metadata_json={},
        **fields,
    )
    session.add(installation)
    await session.flush()
    return installation
