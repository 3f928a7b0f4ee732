"""Create initial met_ schema tables.

Revision ID: 001_met_initial
Revises:
Create Date: 2026-03-02
"""

from alembic import op
import sqlalchemy as sa

revision = "001_met_initial"
down_revision = None
branch_labels = None
depends_on = None

USAGE_KINDS = ("invitation", "sms", "ai_query", "whatsapp", "email")
MONEY = sa.Numeric(18, 6)


def _tenant_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create all met_ tables."""

    # met_usage_events
    op.create_table(
        "met_usage_events",
        *_tenant_columns(),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("unit_cost", MONEY, nullable=False),
        sa.Column("total_cost", MONEY, nullable=False),
        sa.Column("pricing_version", sa.String(32), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_month", sa.Date, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sync_state", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("external_ref", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_token", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_met_usage_events_quantity_positive"),
        sa.CheckConstraint(
            "sync_state <> 'synced' OR external_ref IS NOT NULL",
            name="ck_met_usage_events_synced_has_ref",
        ),
    )
    op.create_index("ix_met_usage_events_tenant_id", "met_usage_events", ["tenant_id"])
    op.create_index("ix_met_usage_events_sync_discovery", "met_usage_events", ["sync_state", "recorded_at"])
    op.create_index(
        "ix_met_usage_events_tenant_month_kind",
        "met_usage_events",
        ["tenant_id", "billing_month", "kind"],
    )

    # met_monthly_summaries: five counters per kind, incremented in place
    kind_columns: list[sa.Column] = []
    for kind in USAGE_KINDS:
        kind_columns.extend([
            sa.Column(f"{kind}_count", sa.BigInteger, nullable=False, server_default="0"),
            sa.Column(f"{kind}_cost", MONEY, nullable=False, server_default="0"),
            sa.Column(f"{kind}_limit", sa.Integer, nullable=False, server_default="-1"),
            sa.Column(f"{kind}_exceeded", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column(f"{kind}_first_exceeded_at", sa.DateTime(timezone=True), nullable=True),
        ])
    op.create_table(
        "met_monthly_summaries",
        *_tenant_columns(),
        sa.Column("billing_month", sa.Date, nullable=False),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("pricing_version", sa.String(32), nullable=False),
        sa.Column("grace_period_days", sa.Integer, nullable=False, server_default="0"),
        *kind_columns,
        sa.Column("total_cost", MONEY, nullable=False, server_default="0"),
        sa.UniqueConstraint("tenant_id", "billing_month", name="uq_met_monthly_summaries_tenant_month"),
    )
    op.create_index("ix_met_monthly_summaries_tenant_id", "met_monthly_summaries", ["tenant_id"])

    # met_tenant_accounts
    op.create_table(
        "met_tenant_accounts",
        *_tenant_columns(),
        sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("external_customer_ref", sa.String(255), nullable=True),
        sa.UniqueConstraint("tenant_id", name="uq_met_tenant_accounts_tenant"),
    )
    op.create_index("ix_met_tenant_accounts_tenant_id", "met_tenant_accounts", ["tenant_id"])


def downgrade() -> None:
    """Drop all met_ tables."""
    op.drop_table("met_tenant_accounts")
    op.drop_table("met_monthly_summaries")
    op.drop_table("met_usage_events")
