"""SQLAlchemy models for persistent storage.

This module defines the database schema for chain data (blocks,
transactions, events, contract calls and deployments), alert rules,
alert notifications, the notification dead-letter queue and the archive
of raw feed payloads.

Chain rows are soft-deleted on rollback. Uniqueness of block height and
transaction id is only enforced across live rows so that a canonical
block can replace a rolled-back one at the same height.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Event slot used by notifications raised at transaction level (no event).
NO_EVENT_INDEX = -1

_LIVE_ROWS_PG = text("deleted = false")
_LIVE_ROWS_SQLITE = text("deleted = 0")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BlockModel(Base):
    """A Stacks block as delivered by the chain event feed."""

    __tablename__ = "blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    parent_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    burn_block_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    burn_block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    burn_block_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    miner_address: Mapped[str | None] = mapped_column(String(128), nullable=True)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("block_hash", name="uq_blocks_hash"),
        Index(
            "uq_blocks_live_height",
            "height",
            unique=True,
            postgresql_where=_LIVE_ROWS_PG,
            sqlite_where=_LIVE_ROWS_SQLITE,
        ),
        Index("idx_blocks_height", "height"),
    )


class TransactionModel(Base):
    """A transaction included in a block."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_id: Mapped[str] = mapped_column(String(66), nullable=False)
    block_id: Mapped[int] = mapped_column(ForeignKey("blocks.id"), nullable=False)

    sender: Mapped[str] = mapped_column(String(128), nullable=False)
    sponsor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_type: Mapped[str] = mapped_column(String(30), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    tx_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fee_micro_stx: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False, default=0)

    read_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    read_length: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    runtime: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    write_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    write_length: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    raw_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_tx: Mapped[str | None] = mapped_column(Text, nullable=True)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index(
            "uq_transactions_live_tx_id",
            "tx_id",
            unique=True,
            postgresql_where=_LIVE_ROWS_PG,
            sqlite_where=_LIVE_ROWS_SQLITE,
        ),
        Index("idx_transactions_tx_id", "tx_id"),
        Index("idx_transactions_block", "block_id"),
        Index("idx_transactions_sender", "sender"),
    )


class EventModel(Base):
    """A typed sub-event emitted by a transaction.

    Variant fields are nullable; which ones are populated depends on
    ``event_type``.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    event_index: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    contract_identifier: Mapped[str | None] = mapped_column(String(150), nullable=True)

    asset_identifier: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(40, 0), nullable=True)
    sender: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(128), nullable=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    topic: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_amount: Mapped[Decimal | None] = mapped_column(Numeric(40, 0), nullable=True)
    unlock_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    locked_address: Mapped[str | None] = mapped_column(String(128), nullable=True)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("transaction_id", "event_index", name="uq_transaction_events_position"),
        Index("idx_transaction_events_type", "event_type"),
        Index("idx_transaction_events_contract", "contract_identifier"),
        Index("idx_transaction_events_asset", "asset_identifier"),
    )


class ContractCallModel(Base):
    """Contract call payload of a CONTRACT_CALL transaction."""

    __tablename__ = "contract_calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    contract_identifier: Mapped[str] = mapped_column(String(150), nullable=False)
    function_name: Mapped[str] = mapped_column(String(128), nullable=False)
    function_args: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_contract_calls_transaction"),
        Index("idx_contract_calls_contract_function", "contract_identifier", "function_name"),
    )


class ContractDeploymentModel(Base):
    """Contract deployment payload of a CONTRACT_DEPLOYMENT transaction."""

    __tablename__ = "contract_deployments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    contract_identifier: Mapped[str] = mapped_column(String(150), nullable=False)
    contract_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    abi: Mapped[str | None] = mapped_column(Text, nullable=True)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_contract_deployments_transaction"),
        Index("idx_contract_deployments_identifier", "contract_identifier"),
    )


class AlertRuleModel(Base):
    """User-defined alert rule.

    All rule variants share this table; ``rule_type`` selects which
    criteria columns are meaningful. Channel and activity-type sets are
    stored as JSON arrays.
    """

    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    monitored_contract_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="INFO")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notification_channels: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    notification_emails: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    slack_webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    contract_identifier: Mapped[str | None] = mapped_column(String(150), nullable=True)
    function_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    asset_identifier: Mapped[str | None] = mapped_column(String(256), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    amount_threshold: Mapped[Decimal | None] = mapped_column(Numeric(40, 0), nullable=True)
    print_topic: Mapped[str | None] = mapped_column(String(100), nullable=True)
    watched_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    activity_types: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_alert_rules_active_type", "is_active", "rule_type"),
        Index("idx_alert_rules_user", "user_id"),
    )


class AlertNotificationModel(Base):
    """A notification raised by one rule for one transaction/event on one channel."""

    __tablename__ = "alert_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id"), nullable=False)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    event_id: Mapped[int | None] = mapped_column(ForeignKey("transaction_events.id"), nullable=True)
    event_index: Mapped[int] = mapped_column(Integer, nullable=False, default=NO_EVENT_INDEX)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    invalidated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidation_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "alert_rule_id",
            "transaction_id",
            "event_index",
            "channel",
            name="uq_alert_notifications_rule_tx_event_channel",
        ),
        Index("idx_alert_notifications_status", "status"),
        Index("idx_alert_notifications_transaction", "transaction_id", "invalidated"),
    )


class DeadLetterEntryModel(Base):
    """A notification that could not be delivered."""

    __tablename__ = "notification_dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    alert_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    alert_rule_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient: Mapped[str] = mapped_column(String(500), nullable=False)
    failure_reason: Mapped[str] = mapped_column(String(50), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_dead_letters_processed", "processed", "queued_at"),
        Index("idx_dead_letters_notification", "notification_id"),
    )


class RawPayloadModel(Base):
    """An incoming feed payload, archived before it is processed."""

    __tablename__ = "raw_payloads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    replay_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_raw_payloads_status_received", "status", "received_at"),
        Index("idx_raw_payloads_received", "received_at"),
    )
