"""Initial schema for chain data, alert rules, notifications and dead letters.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_ROWS = sa.text("deleted = false")


def upgrade() -> None:
    # Blocks table
    op.create_table(
        "blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("height", sa.BigInteger(), nullable=False),
        sa.Column("parent_hash", sa.String(66), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("burn_block_height", sa.BigInteger(), nullable=True),
        sa.Column("burn_block_hash", sa.String(66), nullable=True),
        sa.Column("burn_block_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("miner_address", sa.String(128), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("block_hash", name="uq_blocks_hash"),
    )
    op.create_index(
        "uq_blocks_live_height",
        "blocks",
        ["height"],
        unique=True,
        postgresql_where=LIVE_ROWS,
    )
    op.create_index("idx_blocks_height", "blocks", ["height"])

    # Transactions table
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_id", sa.String(66), nullable=False),
        sa.Column("block_id", sa.Integer(), nullable=False),
        sa.Column("sender", sa.String(128), nullable=False),
        sa.Column("sponsor", sa.String(128), nullable=True),
        sa.Column("tx_type", sa.String(30), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("tx_index", sa.Integer(), nullable=False),
        sa.Column("nonce", sa.BigInteger(), nullable=False),
        sa.Column("fee_micro_stx", sa.Numeric(40, 0), nullable=False),
        sa.Column("read_count", sa.BigInteger(), nullable=True),
        sa.Column("read_length", sa.BigInteger(), nullable=True),
        sa.Column("runtime", sa.BigInteger(), nullable=True),
        sa.Column("write_count", sa.BigInteger(), nullable=True),
        sa.Column("write_length", sa.BigInteger(), nullable=True),
        sa.Column("raw_result", sa.Text(), nullable=True),
        sa.Column("raw_tx", sa.Text(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["block_id"], ["blocks.id"]),
    )
    op.create_index(
        "uq_transactions_live_tx_id",
        "transactions",
        ["tx_id"],
        unique=True,
        postgresql_where=LIVE_ROWS,
    )
    op.create_index("idx_transactions_tx_id", "transactions", ["tx_id"])
    op.create_index("idx_transactions_block", "transactions", ["block_id"])
    op.create_index("idx_transactions_sender", "transactions", ["sender"])

    # Transaction events table
    op.create_table(
        "transaction_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("event_index", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("contract_identifier", sa.String(150), nullable=True),
        sa.Column("asset_identifier", sa.String(256), nullable=True),
        sa.Column("amount", sa.Numeric(40, 0), nullable=True),
        sa.Column("sender", sa.String(128), nullable=True),
        sa.Column("recipient", sa.String(128), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("raw_value", sa.Text(), nullable=True),
        sa.Column("topic", sa.String(100), nullable=True),
        sa.Column("locked_amount", sa.Numeric(40, 0), nullable=True),
        sa.Column("unlock_height", sa.BigInteger(), nullable=True),
        sa.Column("locked_address", sa.String(128), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.UniqueConstraint("transaction_id", "event_index", name="uq_transaction_events_position"),
    )
    op.create_index("idx_transaction_events_type", "transaction_events", ["event_type"])
    op.create_index("idx_transaction_events_contract", "transaction_events", ["contract_identifier"])
    op.create_index("idx_transaction_events_asset", "transaction_events", ["asset_identifier"])

    # Contract calls table
    op.create_table(
        "contract_calls",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("contract_identifier", sa.String(150), nullable=False),
        sa.Column("function_name", sa.String(128), nullable=False),
        sa.Column("function_args", sa.Text(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.UniqueConstraint("transaction_id", name="uq_contract_calls_transaction"),
    )
    op.create_index(
        "idx_contract_calls_contract_function",
        "contract_calls",
        ["contract_identifier", "function_name"],
    )

    # Contract deployments table
    op.create_table(
        "contract_deployments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("contract_identifier", sa.String(150), nullable=False),
        sa.Column("contract_name", sa.String(128), nullable=True),
        sa.Column("source_code", sa.Text(), nullable=True),
        sa.Column("abi", sa.Text(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.UniqueConstraint("transaction_id", name="uq_contract_deployments_transaction"),
    )
    op.create_index(
        "idx_contract_deployments_identifier",
        "contract_deployments",
        ["contract_identifier"],
    )

    # Alert rules table
    op.create_table(
        "alert_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("monitored_contract_id", sa.Integer(), nullable=True),
        sa.Column("rule_type", sa.String(30), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_channels", sa.Text(), nullable=False),
        sa.Column("notification_emails", sa.Text(), nullable=True),
        sa.Column("webhook_url", sa.String(500), nullable=True),
        sa.Column("slack_webhook_url", sa.String(500), nullable=True),
        sa.Column("contract_identifier", sa.String(150), nullable=True),
        sa.Column("function_name", sa.String(128), nullable=True),
        sa.Column("asset_identifier", sa.String(256), nullable=True),
        sa.Column("event_type", sa.String(30), nullable=True),
        sa.Column("amount_threshold", sa.Numeric(40, 0), nullable=True),
        sa.Column("print_topic", sa.String(100), nullable=True),
        sa.Column("watched_address", sa.String(128), nullable=True),
        sa.Column("activity_types", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_alert_rules_active_type", "alert_rules", ["is_active", "rule_type"])
    op.create_index("idx_alert_rules_user", "alert_rules", ["user_id"])

    # Alert notifications table
    op.create_table(
        "alert_notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("alert_rule_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("event_index", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidation_reason", sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["alert_rule_id"], ["alert_rules.id"]),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["event_id"], ["transaction_events.id"]),
        sa.UniqueConstraint(
            "alert_rule_id",
            "transaction_id",
            "event_index",
            "channel",
            name="uq_alert_notifications_rule_tx_event_channel",
        ),
    )
    op.create_index("idx_alert_notifications_status", "alert_notifications", ["status"])
    op.create_index(
        "idx_alert_notifications_transaction",
        "alert_notifications",
        ["transaction_id", "invalidated"],
    )

    # Notification dead-letter queue
    op.create_table(
        "notification_dead_letters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.Integer(), nullable=True),
        sa.Column("alert_rule_id", sa.Integer(), nullable=True),
        sa.Column("alert_rule_name", sa.String(200), nullable=True),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("recipient", sa.String(500), nullable=False),
        sa.Column("failure_reason", sa.String(50), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(100), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_dead_letters_processed",
        "notification_dead_letters",
        ["processed", "queued_at"],
    )
    op.create_index("idx_dead_letters_notification", "notification_dead_letters", ["notification_id"])


def downgrade() -> None:
    op.drop_index("idx_dead_letters_notification", table_name="notification_dead_letters")
    op.drop_index("idx_dead_letters_processed", table_name="notification_dead_letters")
    op.drop_table("notification_dead_letters")

    op.drop_index("idx_alert_notifications_transaction", table_name="alert_notifications")
    op.drop_index("idx_alert_notifications_status", table_name="alert_notifications")
    op.drop_table("alert_notifications")

    op.drop_index("idx_alert_rules_user", table_name="alert_rules")
    op.drop_index("idx_alert_rules_active_type", table_name="alert_rules")
    op.drop_table("alert_rules")

    op.drop_index("idx_contract_deployments_identifier", table_name="contract_deployments")
    op.drop_table("contract_deployments")

    op.drop_index("idx_contract_calls_contract_function", table_name="contract_calls")
    op.drop_table("contract_calls")

    op.drop_index("idx_transaction_events_asset", table_name="transaction_events")
    op.drop_index("idx_transaction_events_contract", table_name="transaction_events")
    op.drop_index("idx_transaction_events_type", table_name="transaction_events")
    op.drop_table("transaction_events")

    op.drop_index("idx_transactions_sender", table_name="transactions")
    op.drop_index("idx_transactions_block", table_name="transactions")
    op.drop_index("idx_transactions_tx_id", table_name="transactions")
    op.drop_index("uq_transactions_live_tx_id", table_name="transactions")
    op.drop_table("transactions")

    op.drop_index("idx_blocks_height", table_name="blocks")
    op.drop_index("uq_blocks_live_height", table_name="blocks")
    op.drop_table("blocks")
