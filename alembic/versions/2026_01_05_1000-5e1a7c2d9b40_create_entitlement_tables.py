"""create_entitlement_tables

Revision ID: 5e1a7c2d9b40
Revises:
Create Date: 2026-01-05 10:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5e1a7c2d9b40"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create plan catalog, subscription, add-on, feature, offer, webhook and audit tables."""

    # Plan catalog
    op.create_table(
        "plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("base_price", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("country_code", sa.String(10), nullable=True),
        sa.Column("local_prices", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_plans_country_code", "plans", ["country_code"])
    op.create_index("ix_plans_listing", "plans", ["is_active", "is_public", "is_archived"])

    op.create_table(
        "plan_billing_cycles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "plan_id",
            sa.String(36),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cycle", sa.String(20), nullable=False),
        sa.Column("price", sa.Numeric(15, 2), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "cycle", name="uq_plan_billing_cycle"),
    )
    op.create_index("ix_plan_billing_cycles_plan_id", "plan_billing_cycles", ["plan_id"])

    # Subscriptions and payments
    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pending_plan_id", sa.String(36), nullable=True),
        sa.Column("pending_billing_cycle", sa.String(20), nullable=True),
        sa.Column("pending_payment_id", sa.String(36), nullable=True),
        sa.Column("pending_quote_amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("downgrade_plan_id", sa.String(36), nullable=True),
        sa.Column("downgrade_billing_cycle", sa.String(20), nullable=True),
        sa.Column("downgrade_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", name="uq_tenant_subscriptions_tenant"),
    )
    op.create_index("ix_tenant_subscriptions_tenant_id", "tenant_subscriptions", ["tenant_id"])
    op.create_index("ix_tenant_subscriptions_status", "tenant_subscriptions", ["status"])
    op.create_index(
        "ix_tenant_subscriptions_period_sweep",
        "tenant_subscriptions",
        ["cancel_at_period_end", "current_period_end"],
    )

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.String(36),
            sa.ForeignKey("tenant_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("provider_order_id", sa.String(100), nullable=True),
        sa.Column("provider_payment_id", sa.String(100), nullable=True),
        sa.Column("provider_signature", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_subscription_payments_tenant_id", "subscription_payments", ["tenant_id"])
    op.create_index(
        "ix_subscription_payments_subscription_id", "subscription_payments", ["subscription_id"]
    )
    op.create_index("ix_subscription_payments_status", "subscription_payments", ["status"])
    op.create_index(
        "ix_subscription_payments_provider_order_id",
        "subscription_payments",
        ["provider_order_id"],
    )

    # Add-ons
    op.create_table(
        "addon_definitions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("dependencies", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "addon_country_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "addon_id",
            sa.String(36),
            sa.ForeignKey("addon_definitions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("country_code", sa.String(10), nullable=False),
        sa.Column("price", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False),
        sa.Column("available_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("coming_soon", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("addon_id", "country_code", name="uq_addon_country"),
    )

    op.create_table(
        "addon_installations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "addon_id", sa.String(36), sa.ForeignKey("addon_definitions.id"), nullable=False
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("subscription_status", sa.String(20), nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_subscription_id", sa.String(100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "addon_id", name="uq_tenant_addon"),
    )
    op.create_index("ix_addon_installations_tenant_id", "addon_installations", ["tenant_id"])
    op.create_index("ix_addon_installations_addon_id", "addon_installations", ["addon_id"])
    op.create_index("ix_addon_installations_status", "addon_installations", ["status"])
    op.create_index(
        "ix_addon_installations_provider_subscription_id",
        "addon_installations",
        ["provider_subscription_id"],
    )

    # Features
    op.create_table(
        "feature_flags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("is_global", sa.Boolean(), nullable=False),
        sa.Column("default_enabled", sa.Boolean(), nullable=False),
        sa.Column("min_tier", sa.String(20), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "tenant_feature_overrides",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("feature_code", sa.String(100), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("updated_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "feature_code", name="uq_tenant_feature_override"),
    )
    op.create_index(
        "ix_tenant_feature_overrides_tenant_id", "tenant_feature_overrides", ["tenant_id"]
    )

    # Offers and coupons
    op.create_table(
        "billing_offers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("coupon_code", sa.String(50), nullable=True, unique=True),
        sa.Column("offer_type", sa.String(10), nullable=False),
        sa.Column("value", sa.Numeric(15, 2), nullable=False),
        sa.Column("country_code", sa.String(10), nullable=True),
        sa.Column("plan_code", sa.String(100), nullable=True),
        sa.Column("billing_cycle", sa.String(20), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    # Provider webhooks
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("gateway", sa.String(30), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("gateway", "event_id", name="uq_webhook_gateway_event"),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])

    # Audit trail
    op.create_table(
        "audit_activities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("activity_type", sa.String(100), nullable=False),
        sa.Column("severity", sa.String(20), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_type", sa.String(100), nullable=True),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_activities_tenant_id", "audit_activities", ["tenant_id"])
    op.create_index("ix_audit_activities_activity_type", "audit_activities", ["activity_type"])
    op.create_index("ix_audit_activities_severity", "audit_activities", ["severity"])
    op.create_index("ix_audit_activities_user_id", "audit_activities", ["user_id"])
    op.create_index("ix_audit_activities_timestamp", "audit_activities", ["timestamp"])
    op.create_index(
        "ix_audit_activities_tenant_timestamp", "audit_activities", ["tenant_id", "timestamp"]
    )
    op.create_index(
        "ix_audit_activities_type_timestamp", "audit_activities", ["activity_type", "timestamp"]
    )


def downgrade() -> None:
    """Drop entitlement tables."""
    op.drop_table("audit_activities")
    op.drop_table("webhook_events")
    op.drop_table("billing_offers")
    op.drop_table("tenant_feature_overrides")
    op.drop_table("feature_flags")
    op.drop_table("addon_installations")
    op.drop_table("addon_country_configs")
    op.drop_table("addon_definitions")
    op.drop_table("subscription_payments")
    op.drop_table("tenant_subscriptions")
    op.drop_table("plan_billing_cycles")
    op.drop_table("plans")
