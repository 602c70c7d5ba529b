"""Initial schema for sync state, price history and alerting.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Sync instances table
    op.create_table(
        "sync_instances",
        sa.Column("instance_id", sa.String(128), nullable=False),
        sa.Column("protocol", sa.String(32), nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("rpc_url", sa.Text(), nullable=True),
        sa.Column("protocol_config", sa.JSON(), nullable=False),
        sa.Column("symbols", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("instance_id"),
    )
    op.create_index("idx_sync_instances_protocol_chain", "sync_instances", ["protocol", "chain"])
    op.create_index("idx_sync_instances_status", "sync_instances", ["status"])

    # Price observations table
    op.create_table(
        "price_observations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instance_id", sa.String(128), nullable=False),
        sa.Column("protocol", sa.String(32), nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("symbol", sa.String(80), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("source_price", sa.Float(), nullable=True),
        sa.Column("deviation", sa.Float(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_price_observations_symbol_ts", "price_observations", ["symbol", "timestamp"])
    op.create_index(
        "idx_price_observations_protocol_chain_ts",
        "price_observations",
        ["protocol", "chain", "timestamp"],
    )
    op.create_index("idx_price_observations_ts", "price_observations", ["timestamp"])

    # Price updates table
    op.create_table(
        "price_updates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instance_id", sa.String(128), nullable=False),
        sa.Column("protocol", sa.String(32), nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("symbol", sa.String(80), nullable=False),
        sa.Column("previous_price", sa.Float(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("change_ratio", sa.Float(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_price_updates_symbol_ts", "price_updates", ["symbol", "timestamp"])
    op.create_index("idx_price_updates_ts", "price_updates", ["timestamp"])

    # Alert rules table
    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("event", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("protocols", sa.JSON(), nullable=False),
        sa.Column("chains", sa.JSON(), nullable=False),
        sa.Column("symbols", sa.JSON(), nullable=False),
        sa.Column("instances", sa.JSON(), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False),
        sa.Column("max_notifications_per_hour", sa.Integer(), nullable=True),
        sa.Column("owner", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_alert_rules_event_enabled", "alert_rules", ["event", "enabled"])

    # Alerts table
    op.create_table(
        "alerts",
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("rule_id", sa.String(64), nullable=False),
        sa.Column("event", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("protocol", sa.String(32), nullable=True),
        sa.Column("chain", sa.String(32), nullable=True),
        sa.Column("symbol", sa.String(80), nullable=True),
        sa.Column("instance_id", sa.String(128), nullable=True),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("occurrences", sa.Integer(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_count", sa.Integer(), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("fingerprint"),
    )
    op.create_index("idx_alerts_status_last_seen", "alerts", ["status", "last_seen"])
    op.create_index("idx_alerts_rule", "alerts", ["rule_id"])
    op.create_index("idx_alerts_symbol", "alerts", ["symbol"])


def downgrade() -> None:
    op.drop_index("idx_alerts_symbol", table_name="alerts")
    op.drop_index("idx_alerts_rule", table_name="alerts")
    op.drop_index("idx_alerts_status_last_seen", table_name="alerts")
    op.drop_table("alerts")

    op.drop_index("idx_alert_rules_event_enabled", table_name="alert_rules")
    op.drop_table("alert_rules")

    op.drop_index("idx_price_updates_ts", table_name="price_updates")
    op.drop_index("idx_price_updates_symbol_ts", table_name="price_updates")
    op.drop_table("price_updates")

    op.drop_index("idx_price_observations_ts", table_name="price_observations")
    op.drop_index("idx_price_observations_protocol_chain_ts", table_name="price_observations")
    op.drop_index("idx_price_observations_symbol_ts", table_name="price_observations")
    op.drop_table("price_observations")

    op.drop_index("idx_sync_instances_status", table_name="sync_instances")
    op.drop_index("idx_sync_instances_protocol_chain", table_name="sync_instances")
    op.drop_table("sync_instances")
