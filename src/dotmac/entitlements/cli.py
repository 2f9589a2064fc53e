#!/usr/bin/env python
"""
CLI management commands for the entitlement engine.
"""

import asyncio
import json

import click

from dotmac.entitlements.addons.entitlement import AddonEntitlementResolver
from dotmac.entitlements.cache import build_cache_backend
from dotmac.entitlements.db import create_all_tables_async, get_async_db
from dotmac.entitlements.features.service import FeatureResolver
from dotmac.entitlements.logging import setup_logging
from dotmac.entitlements.payments import build_gateway
from dotmac.entitlements.settings import get_settings
from dotmac.entitlements.subscriptions.service import SubscriptionLifecycleManager


async def run_sweeps() -> dict[str, object]:
    """Apply due downgrades and move add-on installations through expiry."""
    config = get_settings()
    cache = build_cache_backend(config)
    gateway = build_gateway(config)
    try:
        async with get_async_db() as session:
            features = FeatureResolver(session, cache, ttl=config.cache.feature_ttl_seconds)
            manager = SubscriptionLifecycleManager(session, features, gateway, config=config)
            downgrades = await manager.process_scheduled_downgrades()

            addons = AddonEntitlementResolver(
                session, grace_period_days=config.billing.grace_period_days
            )
            addon_counts = await addons.sync_expired_addons()
    finally:
        await gateway.close()
        await cache.close()
    return {"downgrades_processed": downgrades, "addons": addon_counts}


@click.group()
def cli() -> None:
    """DotMac entitlement engine CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create all tables."""
    click.echo("Initializing database...")
    asyncio.run(create_all_tables_async())
    click.echo("Database initialized successfully!")


@cli.command()
def sweep() -> None:
    """Run the scheduled downgrade and add-on expiry sweeps once."""
    result = asyncio.run(run_sweeps())
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("tenant_id")
@click.argument("addon_code")
def check_addon(tenant_id: str, addon_code: str) -> None:
    """Print the add-on verdict for a tenant."""
    config = get_settings()

    async def _check() -> str:
        async with get_async_db() as session:
            resolver = AddonEntitlementResolver(
                session, grace_period_days=config.billing.grace_period_days
            )
            verdict = await resolver.check_addon(tenant_id, addon_code)
            return verdict.model_dump_json(indent=2)

    click.echo(asyncio.run(_check()))


if __name__ == "__main__":
    cli()
