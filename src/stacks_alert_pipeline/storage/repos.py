"""Repository pattern implementations for data access.

This module provides data access for chain data (blocks, transactions,
events), the alert rule catalog, alert notifications, the
notification dead-letter queue and the raw payload archive.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from stacks_alert_pipeline.alerter.models import NotificationEnvelope, NotificationStatus
from stacks_alert_pipeline.ingestor.models import Block, EventType, Transaction
from stacks_alert_pipeline.rules.models import (
    ActivityType,
    AddressActivityCriteria,
    AlertRule,
    AlertRuleType,
    AlertSeverity,
    ContractCallCriteria,
    FailedTransactionCriteria,
    NotificationChannel,
    PrintEventCriteria,
    RuleCriteria,
    TokenTransferCriteria,
)
from stacks_alert_pipeline.storage.models import (
    NO_EVENT_INDEX,
    AlertNotificationModel,
    AlertRuleModel,
    BlockModel,
    ContractCallModel,
    ContractDeploymentModel,
    DeadLetterEntryModel,
    EventModel,
    RawPayloadModel,
    TransactionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

REORG_INVALIDATION_REASON = "BLOCKCHAIN_REORG"


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _rowcount(result: object) -> int:
    # SQLAlchemy Result does have rowcount but typing doesn't reflect it
    return result.rowcount or 0  # type: ignore[attr-defined]


def _to_decimal(value: int | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


# ============================================================================
# Chain data
# ============================================================================


@dataclass
class BlockDTO:
    """Data transfer object for blocks."""

    id: int
    block_hash: str
    height: int
    deleted: bool
    deleted_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BlockModel) -> BlockDTO:
        return cls(
            id=model.id,
            block_hash=model.block_hash,
            height=model.height,
            deleted=model.deleted,
            deleted_at=_as_utc(model.deleted_at),
        )


@dataclass
class StoredBlock:
    """Row ids assigned when a block was inserted."""

    block: BlockDTO
    transaction_ids: dict[str, int] = field(default_factory=dict)
    event_ids: dict[tuple[str, int], int] = field(default_factory=dict)


@dataclass
class TransactionDTO:
    """Data transfer object for transactions."""

    id: int
    tx_id: str
    block_id: int
    sender: str
    tx_type: str
    success: bool
    deleted: bool

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            id=model.id,
            tx_id=model.tx_id,
            block_id=model.block_id,
            sender=model.sender,
            tx_type=model.tx_type,
            success=model.success,
            deleted=model.deleted,
        )


@dataclass
class CascadeCounts:
    """Rows touched by a soft-delete or restore cascade."""

    transactions: int = 0
    events: int = 0
    contract_calls: int = 0
    contract_deployments: int = 0


async def cascade_soft_delete(
    session: AsyncSession,
    block_id: int,
    *,
    deleted: bool,
    at: datetime | None,
) -> CascadeCounts:
    """Set the deleted flag on a block and everything it owns.

    Transactions are updated first, then events, contract calls and
    deployments, each with one set-based UPDATE. Events always end up
    with their transaction's flag.

    Args:
        session: Session of the current unit of work.
        block_id: Row id of the block.
        deleted: True to soft-delete, False to restore.
        at: Deletion timestamp (ignored on restore).
    """
    deleted_at = at if deleted else None
    await session.execute(
        update(BlockModel)
        .where(BlockModel.id == block_id)
        .values(deleted=deleted, deleted_at=deleted_at)
        .execution_options(synchronize_session=False)
    )
    tx_ids = select(TransactionModel.id).where(TransactionModel.block_id == block_id).scalar_subquery()

    counts = CascadeCounts()
    result = await session.execute(
        update(TransactionModel)
        .where(TransactionModel.block_id == block_id)
        .values(deleted=deleted, deleted_at=deleted_at)
        .execution_options(synchronize_session=False)
    )
    counts.transactions = _rowcount(result)
    result = await session.execute(
        update(EventModel)
        .where(EventModel.transaction_id.in_(tx_ids))
        .values(deleted=deleted, deleted_at=deleted_at)
        .execution_options(synchronize_session=False)
    )
    counts.events = _rowcount(result)
    result = await session.execute(
        update(ContractCallModel)
        .where(ContractCallModel.transaction_id.in_(tx_ids))
        .values(deleted=deleted, deleted_at=deleted_at)
        .execution_options(synchronize_session=False)
    )
    counts.contract_calls = _rowcount(result)
    result = await session.execute(
        update(ContractDeploymentModel)
        .where(ContractDeploymentModel.transaction_id.in_(tx_ids))
        .values(deleted=deleted, deleted_at=deleted_at)
        .execution_options(synchronize_session=False)
    )
    counts.contract_deployments = _rowcount(result)
    await session.flush()
    return counts


class BlockRepository:
    """Repository for blocks and the chain data they own."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_hash(self, block_hash: str) -> BlockDTO | None:
        result = await self.session.execute(
            select(BlockModel)
            .where(BlockModel.block_hash == block_hash)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def insert(self, block: Block) -> StoredBlock:
        """Insert a block with its transactions, events and call/deployment rows.

        Raises:
            IntegrityError: If the block hash, a live block height or a live
                transaction id already exists.
        """
        block_model = BlockModel(
            block_hash=block.block_hash,
            height=block.height,
            parent_hash=block.parent_hash,
            timestamp=block.timestamp,
            burn_block_height=block.burn_block_height,
            burn_block_hash=block.burn_block_hash,
            burn_block_time=block.burn_block_time,
            miner_address=block.miner_address,
        )
        self.session.add(block_model)
        await self.session.flush()

        tx_models: list[tuple[TransactionModel, Transaction]] = []
        for tx in block.transactions:
            cost = tx.execution_cost
            model = TransactionModel(
                tx_id=tx.tx_id,
                block_id=block_model.id,
                sender=tx.sender,
                sponsor=tx.sponsor,
                tx_type=tx.tx_type.value,
                success=tx.success,
                tx_index=tx.tx_index,
                nonce=tx.nonce,
                fee_micro_stx=Decimal(tx.fee_micro_stx),
                read_count=cost.read_count,
                read_length=cost.read_length,
                runtime=cost.runtime,
                write_count=cost.write_count,
                write_length=cost.write_length,
                raw_result=tx.raw_result,
                raw_tx=tx.raw_tx,
            )
            self.session.add(model)
            tx_models.append((model, tx))
        await self.session.flush()

        stored = StoredBlock(block=BlockDTO.from_model(block_model))
        event_models: list[tuple[str, EventModel]] = []
        for model, tx in tx_models:
            stored.transaction_ids[tx.tx_id] = model.id
            for event in tx.events:
                event_model = EventModel(
                    transaction_id=model.id,
                    event_index=event.event_index,
                    event_type=event.event_type.value,
                    contract_identifier=event.contract_identifier,
                    asset_identifier=event.asset_identifier,
                    amount=_to_decimal(event.amount),
                    sender=event.sender,
                    recipient=event.recipient,
                    value=event.value,
                    raw_value=event.raw_value,
                    topic=event.topic,
                    locked_amount=_to_decimal(event.locked_amount),
                    unlock_height=event.unlock_height,
                    locked_address=event.locked_address,
                )
                self.session.add(event_model)
                event_models.append((tx.tx_id, event_model))
            if tx.contract_call is not None:
                self.session.add(
                    ContractCallModel(
                        transaction_id=model.id,
                        contract_identifier=tx.contract_call.contract_identifier,
                        function_name=tx.contract_call.function_name,
                        function_args=json.dumps(list(tx.contract_call.function_args)),
                    )
                )
            if tx.contract_deployment is not None:
                self.session.add(
                    ContractDeploymentModel(
                        transaction_id=model.id,
                        contract_identifier=tx.contract_deployment.contract_identifier,
                        contract_name=tx.contract_deployment.contract_name,
                        source_code=tx.contract_deployment.source_code,
                        abi=tx.contract_deployment.abi,
                    )
                )
        await self.session.flush()

        for tx_id, event_model in event_models:
            stored.event_ids[(tx_id, event_model.event_index)] = event_model.id
        return stored

    async def soft_delete(self, block_id: int, at: datetime) -> CascadeCounts:
        return await cascade_soft_delete(self.session, block_id, deleted=True, at=at)

    async def restore(self, block_id: int) -> CascadeCounts:
        return await cascade_soft_delete(self.session, block_id, deleted=False, at=None)


class TransactionRepository:
    """Read access to persisted transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_tx_id(self, tx_id: str, *, include_deleted: bool = False) -> TransactionDTO | None:
        """Get the live transaction with ``tx_id`` (or the latest one, deleted included)."""
        stmt = select(TransactionModel).where(TransactionModel.tx_id == tx_id)
        if not include_deleted:
            stmt = stmt.where(TransactionModel.deleted.is_(False))
        result = await self.session.execute(
            stmt.order_by(TransactionModel.id.desc()).limit(1).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def count_events(self, transaction_id: int, *, deleted: bool | None = None) -> int:
        stmt = select(func.count()).select_from(EventModel).where(EventModel.transaction_id == transaction_id)
        if deleted is not None:
            stmt = stmt.where(EventModel.deleted.is_(deleted))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


# ============================================================================
# Alert rules
# ============================================================================


def _criteria_from_model(model: AlertRuleModel) -> RuleCriteria:
    rule_type = AlertRuleType(model.rule_type)
    threshold = int(model.amount_threshold) if model.amount_threshold is not None else None
    if rule_type == AlertRuleType.CONTRACT_CALL:
        return ContractCallCriteria(
            contract_identifier=model.contract_identifier,
            function_name=model.function_name,
            amount_threshold=threshold,
        )
    if rule_type == AlertRuleType.TOKEN_TRANSFER:
        return TokenTransferCriteria(
            asset_identifier=model.asset_identifier,
            event_type=EventType(model.event_type) if model.event_type else None,
            amount_threshold=threshold,
        )
    if rule_type == AlertRuleType.FAILED_TRANSACTION:
        return FailedTransactionCriteria(
            contract_identifier=model.contract_identifier,
            function_name=model.function_name,
        )
    if rule_type == AlertRuleType.PRINT_EVENT:
        return PrintEventCriteria(contract_identifier=model.contract_identifier, topic=model.print_topic)
    activity = json.loads(model.activity_types) if model.activity_types else [ActivityType.SENDER.value]
    return AddressActivityCriteria(
        watched_address=model.watched_address or "",
        activity_types=frozenset(ActivityType(a) for a in activity),
    )


def rule_from_model(model: AlertRuleModel) -> AlertRule:
    """Convert a catalog row into a domain AlertRule."""
    emails = tuple(e.strip() for e in (model.notification_emails or "").split(",") if e.strip())
    return AlertRule(
        id=model.id,
        user_id=model.user_id,
        name=model.name,
        criteria=_criteria_from_model(model),
        severity=AlertSeverity(model.severity),
        active=model.is_active,
        cooldown=timedelta(minutes=model.cooldown_minutes),
        last_triggered_at=_as_utc(model.last_triggered_at),
        channels=frozenset(NotificationChannel(c) for c in json.loads(model.notification_channels or "[]")),
        monitored_contract_id=model.monitored_contract_id,
        description=model.description,
        notification_emails=emails,
        webhook_url=model.webhook_url,
        slack_webhook_url=model.slack_webhook_url,
    )


def _criteria_columns(criteria: RuleCriteria) -> dict[str, object]:
    columns: dict[str, object] = {}
    if isinstance(criteria, (ContractCallCriteria, FailedTransactionCriteria)):
        columns["contract_identifier"] = criteria.contract_identifier
        columns["function_name"] = criteria.function_name
    if isinstance(criteria, (ContractCallCriteria, TokenTransferCriteria)):
        columns["amount_threshold"] = _to_decimal(criteria.amount_threshold)
    if isinstance(criteria, TokenTransferCriteria):
        columns["asset_identifier"] = criteria.asset_identifier
        columns["event_type"] = criteria.event_type.value if criteria.event_type else None
    if isinstance(criteria, PrintEventCriteria):
        columns["contract_identifier"] = criteria.contract_identifier
        columns["print_topic"] = criteria.topic
    if isinstance(criteria, AddressActivityCriteria):
        columns["watched_address"] = criteria.watched_address
        columns["activity_types"] = json.dumps(sorted(a.value for a in criteria.activity_types))
    return columns


class AlertRuleRepository:
    """Repository for the alert rule catalog.

    The pipeline only reads rules, except for ``last_triggered_at`` which is
    written through ``mark_triggered_if_out_of_cooldown``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, rule_id: int) -> AlertRule | None:
        model = await self.session.get(AlertRuleModel, rule_id, populate_existing=True)
        return rule_from_model(model) if model else None

    async def list_active(self) -> list[AlertRule]:
        result = await self.session.execute(
            select(AlertRuleModel)
            .where(AlertRuleModel.is_active.is_(True))
            .order_by(AlertRuleModel.id)
            .execution_options(populate_existing=True)
        )
        return [rule_from_model(m) for m in result.scalars().all()]

    async def insert(self, rule: AlertRule) -> AlertRule:
        """Insert ``rule`` (its ``id`` is ignored) and return it with the assigned id."""
        model = AlertRuleModel(
            user_id=rule.user_id,
            monitored_contract_id=rule.monitored_contract_id,
            rule_type=rule.rule_type.value,
            name=rule.name,
            description=rule.description,
            severity=rule.severity.value,
            is_active=rule.active,
            cooldown_minutes=int(rule.cooldown.total_seconds() // 60),
            last_triggered_at=rule.last_triggered_at,
            notification_channels=json.dumps(sorted(c.value for c in rule.channels)),
            notification_emails=",".join(rule.notification_emails) or None,
            webhook_url=rule.webhook_url,
            slack_webhook_url=rule.slack_webhook_url,
            **_criteria_columns(rule.criteria),
        )
        self.session.add(model)
        await self.session.flush()
        return replace(rule, id=model.id)

    async def set_active(self, rule_id: int, active: bool) -> bool:
        result = await self.session.execute(
            update(AlertRuleModel).where(AlertRuleModel.id == rule_id).values(is_active=active)
        )
        return _rowcount(result) > 0

    async def mark_triggered_if_out_of_cooldown(
        self,
        rule_id: int,
        *,
        now: datetime,
        window_start: datetime,
    ) -> bool:
        """Atomically claim a trigger for ``rule_id``.

        Sets ``last_triggered_at = now`` only if the rule never fired or last
        fired at or before ``window_start``. Exactly one of several concurrent
        callers wins.

        Returns:
            True if this call updated the row (rule fires), False otherwise.
        """
        result = await self.session.execute(
            update(AlertRuleModel)
            .where(
                AlertRuleModel.id == rule_id,
                (AlertRuleModel.last_triggered_at.is_(None)) | (AlertRuleModel.last_triggered_at <= window_start),
            )
            .values(last_triggered_at=now)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) > 0


# ============================================================================
# Alert notifications
# ============================================================================


@dataclass
class AlertNotificationDTO:
    """Data transfer object for alert notifications."""

    id: int
    alert_rule_id: int
    transaction_id: int
    event_id: int | None
    event_index: int
    channel: NotificationChannel
    status: NotificationStatus
    attempt_count: int
    message: str
    triggered_at: datetime
    invalidated: bool
    failure_reason: str | None = None
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    invalidated_at: datetime | None = None
    invalidation_reason: str | None = None

    @classmethod
    def from_model(cls, model: AlertNotificationModel) -> AlertNotificationDTO:
        return cls(
            id=model.id,
            alert_rule_id=model.alert_rule_id,
            transaction_id=model.transaction_id,
            event_id=model.event_id,
            event_index=model.event_index,
            channel=NotificationChannel(model.channel),
            status=NotificationStatus(model.status),
            attempt_count=model.attempt_count,
            message=model.message,
            triggered_at=_as_utc(model.triggered_at),  # type: ignore[arg-type]
            invalidated=model.invalidated,
            failure_reason=model.failure_reason,
            last_attempt_at=_as_utc(model.last_attempt_at),
            sent_at=_as_utc(model.sent_at),
            invalidated_at=_as_utc(model.invalidated_at),
            invalidation_reason=model.invalidation_reason,
        )


class AlertNotificationRepository:
    """Repository for alert notifications."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(
        self,
        *,
        alert_rule_id: int,
        transaction_id: int,
        event_id: int | None,
        event_index: int | None,
        channel: NotificationChannel,
        message: str,
        triggered_at: datetime,
    ) -> int | None:
        """Insert a PENDING notification unless the (rule, tx, event, channel) tuple exists.

        Returns:
            The new notification id, or None if it already existed.
        """
        values = {
            "alert_rule_id": alert_rule_id,
            "transaction_id": transaction_id,
            "event_id": event_id,
            "event_index": event_index if event_index is not None else NO_EVENT_INDEX,
            "channel": channel.value,
            "status": NotificationStatus.PENDING.value,
            "attempt_count": 0,
            "message": message,
            "triggered_at": triggered_at,
            "invalidated": False,
        }
        conflict_cols = ["alert_rule_id", "transaction_id", "event_index", "channel"]
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            stmt = pg_insert(AlertNotificationModel).values(**values)
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_cols).returning(AlertNotificationModel.id)
        else:
            stmt = sqlite_insert(AlertNotificationModel).values(**values)
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_cols).returning(AlertNotificationModel.id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, notification_id: int) -> AlertNotificationDTO | None:
        model = await self.session.get(AlertNotificationModel, notification_id, populate_existing=True)
        return AlertNotificationDTO.from_model(model) if model else None

    async def list_for_transaction(self, transaction_id: int) -> list[AlertNotificationDTO]:
        result = await self.session.execute(
            select(AlertNotificationModel)
            .where(AlertNotificationModel.transaction_id == transaction_id)
            .order_by(AlertNotificationModel.id)
            .execution_options(populate_existing=True)
        )
        return [AlertNotificationDTO.from_model(m) for m in result.scalars().all()]

    async def list_undelivered(self, *, triggered_before: datetime, limit: int = 100) -> list[AlertNotificationDTO]:
        """Non-terminal, still valid notifications triggered before ``triggered_before``."""
        result = await self.session.execute(
            select(AlertNotificationModel)
            .where(
                AlertNotificationModel.status.in_(
                    [NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value]
                ),
                AlertNotificationModel.invalidated.is_(False),
                AlertNotificationModel.triggered_at <= triggered_before,
            )
            .order_by(AlertNotificationModel.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [AlertNotificationDTO.from_model(m) for m in result.scalars().all()]

    async def mark_sent(self, notification_id: int, *, at: datetime) -> None:
        await self.session.execute(
            update(AlertNotificationModel)
            .where(AlertNotificationModel.id == notification_id)
            .values(
                status=NotificationStatus.SENT.value,
                attempt_count=AlertNotificationModel.attempt_count + 1,
                last_attempt_at=at,
                sent_at=at,
                failure_reason=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def record_failed_attempt(
        self,
        notification_id: int,
        *,
        at: datetime,
        reason: str,
        terminal: bool,
    ) -> None:
        """Count a failed attempt; RETRYING unless ``terminal`` (then FAILED)."""
        status = NotificationStatus.FAILED if terminal else NotificationStatus.RETRYING
        await self.session.execute(
            update(AlertNotificationModel)
            .where(AlertNotificationModel.id == notification_id)
            .values(
                status=status.value,
                attempt_count=AlertNotificationModel.attempt_count + 1,
                last_attempt_at=at,
                failure_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, notification_id: int, *, reason: str) -> None:
        """Mark FAILED without counting an attempt (nothing was sent)."""
        await self.session.execute(
            update(AlertNotificationModel)
            .where(AlertNotificationModel.id == notification_id)
            .values(status=NotificationStatus.FAILED.value, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )

    async def bulk_invalidate_by_block(
        self,
        block_id: int,
        *,
        at: datetime,
        reason: str = REORG_INVALIDATION_REASON,
    ) -> int:
        """Invalidate every still-valid notification raised for a transaction of ``block_id``.

        Returns:
            Number of notifications invalidated by this call.
        """
        tx_ids = select(TransactionModel.id).where(TransactionModel.block_id == block_id).scalar_subquery()
        result = await self.session.execute(
            update(AlertNotificationModel)
            .where(
                AlertNotificationModel.transaction_id.in_(tx_ids),
                AlertNotificationModel.invalidated.is_(False),
            )
            .values(invalidated=True, invalidated_at=at, invalidation_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result)

    async def get_envelope(self, notification_id: int) -> NotificationEnvelope | None:
        """Rebuild the delivery envelope of a stored notification."""
        result = await self.session.execute(
            select(AlertNotificationModel, AlertRuleModel, TransactionModel, BlockModel, EventModel)
            .join(AlertRuleModel, AlertRuleModel.id == AlertNotificationModel.alert_rule_id)
            .join(TransactionModel, TransactionModel.id == AlertNotificationModel.transaction_id)
            .join(BlockModel, BlockModel.id == TransactionModel.block_id)
            .outerjoin(EventModel, EventModel.id == AlertNotificationModel.event_id)
            .where(AlertNotificationModel.id == notification_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        notification, rule_model, tx, block, event = row
        rule = rule_from_model(rule_model)
        channel = NotificationChannel(notification.channel)
        return NotificationEnvelope(
            notification_id=notification.id,
            channel=channel,
            recipient=rule.recipient_for(channel),
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            tx_id=tx.tx_id,
            sender=tx.sender,
            success=tx.success,
            block_height=block.height,
            triggered_at=_as_utc(notification.triggered_at),  # type: ignore[arg-type]
            message=notification.message,
            event_type=event.event_type if event else None,
            event_index=event.event_index if event else None,
            contract_identifier=event.contract_identifier if event else None,
            event_description=None,
        )


# ============================================================================
# Dead-letter queue
# ============================================================================


@dataclass
class DeadLetterEntryDTO:
    """Data transfer object for dead-lettered notifications."""

    channel: str
    recipient: str
    failure_reason: str
    notification_id: int | None = None
    alert_rule_id: int | None = None
    alert_rule_name: str | None = None
    error_message: str | None = None
    attempt_count: int = 0
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    queued_at: datetime | None = None
    processed: bool = False
    processed_at: datetime | None = None
    processed_by: str | None = None
    resolution_notes: str | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: DeadLetterEntryModel) -> DeadLetterEntryDTO:
        return cls(
            id=model.id,
            notification_id=model.notification_id,
            alert_rule_id=model.alert_rule_id,
            alert_rule_name=model.alert_rule_name,
            channel=model.channel,
            recipient=model.recipient,
            failure_reason=model.failure_reason,
            error_message=model.error_message,
            attempt_count=model.attempt_count,
            first_attempt_at=_as_utc(model.first_attempt_at),
            last_attempt_at=_as_utc(model.last_attempt_at),
            queued_at=_as_utc(model.queued_at),
            processed=model.processed,
            processed_at=_as_utc(model.processed_at),
            processed_by=model.processed_by,
            resolution_notes=model.resolution_notes,
        )


class DeadLetterRepository:
    """Repository for the notification dead-letter queue.

    The dispatcher only appends; review and resolution are operator actions.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: DeadLetterEntryDTO) -> DeadLetterEntryDTO:
        model = DeadLetterEntryModel(
            notification_id=dto.notification_id,
            alert_rule_id=dto.alert_rule_id,
            alert_rule_name=dto.alert_rule_name,
            channel=dto.channel,
            recipient=dto.recipient,
            failure_reason=dto.failure_reason,
            error_message=dto.error_message,
            attempt_count=dto.attempt_count,
            first_attempt_at=dto.first_attempt_at,
            last_attempt_at=dto.last_attempt_at,
            queued_at=dto.queued_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return DeadLetterEntryDTO.from_model(model)

    async def list_unprocessed(self, limit: int = 100) -> list[DeadLetterEntryDTO]:
        result = await self.session.execute(
            select(DeadLetterEntryModel)
            .where(DeadLetterEntryModel.processed.is_(False))
            .order_by(DeadLetterEntryModel.queued_at, DeadLetterEntryModel.id)
            .limit(limit)
        )
        return [DeadLetterEntryDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_notification(self, notification_id: int) -> list[DeadLetterEntryDTO]:
        result = await self.session.execute(
            select(DeadLetterEntryModel)
            .where(DeadLetterEntryModel.notification_id == notification_id)
            .order_by(DeadLetterEntryModel.id)
        )
        return [DeadLetterEntryDTO.from_model(m) for m in result.scalars().all()]

    async def count_unprocessed(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(DeadLetterEntryModel).where(DeadLetterEntryModel.processed.is_(False))
        )
        return int(result.scalar_one())

    async def mark_processed(
        self,
        entry_id: int,
        *,
        processed_by: str,
        resolution_notes: str | None = None,
        at: datetime | None = None,
    ) -> bool:
        """Mark an entry as handled by an operator.

        Returns:
            True if an unprocessed entry was updated.
        """
        result = await self.session.execute(
            update(DeadLetterEntryModel)
            .where(DeadLetterEntryModel.id == entry_id, DeadLetterEntryModel.processed.is_(False))
            .values(
                processed=True,
                processed_at=at or datetime.now(UTC),
                processed_by=processed_by,
                resolution_notes=resolution_notes,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) > 0


# ============================================================================
# Raw payload archive
# ============================================================================


class RawPayloadStatus(str, Enum):
    """Processing state of an archived payload.

    PENDING: archived, outcome not recorded yet (in flight or crashed).
    PROCESSED: its unit of work committed.
    FAILED: its unit of work was rolled back; can be replayed.
    REJECTED: not a valid payload; replaying would fail the same way.
    """

    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


REPLAYABLE_STATUSES = (RawPayloadStatus.PENDING, RawPayloadStatus.FAILED)


@dataclass
class RawPayloadDTO:
    """Data transfer object for archived payloads."""

    id: int
    received_at: datetime
    payload_json: str
    status: RawPayloadStatus
    source: str | None = None
    error_message: str | None = None
    processed_at: datetime | None = None
    replay_count: int = 0

    @classmethod
    def from_model(cls, model: RawPayloadModel) -> RawPayloadDTO:
        return cls(
            id=model.id,
            received_at=_as_utc(model.received_at),  # type: ignore[arg-type]
            payload_json=model.payload_json,
            status=RawPayloadStatus(model.status),
            source=model.source,
            error_message=model.error_message,
            processed_at=_as_utc(model.processed_at),
            replay_count=model.replay_count,
        )

    @property
    def payload(self) -> Any:
        return json.loads(self.payload_json)


class RawPayloadRepository:
    """Repository for the raw payload archive.

    Rows are written in their own short sessions, outside the payload's
    unit of work, so a failed payload stays on record for replay.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(
        self,
        payload: Any,
        *,
        received_at: datetime,
        source: str | None = None,
    ) -> RawPayloadDTO:
        model = RawPayloadModel(
            received_at=received_at,
            payload_json=json.dumps(payload, default=str),
            source=source,
            status=RawPayloadStatus.PENDING.value,
        )
        self.session.add(model)
        await self.session.flush()
        return RawPayloadDTO.from_model(model)

    async def get(self, payload_id: int) -> RawPayloadDTO | None:
        model = await self.session.get(RawPayloadModel, payload_id, populate_existing=True)
        return RawPayloadDTO.from_model(model) if model else None

    async def list_by_status(
        self,
        statuses: tuple[RawPayloadStatus, ...],
        *,
        limit: int = 100,
    ) -> list[RawPayloadDTO]:
        """Oldest first."""
        result = await self.session.execute(
            select(RawPayloadModel)
            .where(RawPayloadModel.status.in_([s.value for s in statuses]))
            .order_by(RawPayloadModel.received_at, RawPayloadModel.id)
            .limit(limit)
        )
        return [RawPayloadDTO.from_model(m) for m in result.scalars().all()]

    async def set_status(
        self,
        payload_id: int,
        status: RawPayloadStatus,
        *,
        at: datetime,
        error: str | None = None,
    ) -> bool:
        """Record the outcome of processing; clears the error on success."""
        result = await self.session.execute(
            update(RawPayloadModel)
            .where(RawPayloadModel.id == payload_id)
            .values(
                status=status.value,
                error_message=error,
                processed_at=at if status == RawPayloadStatus.PROCESSED else None,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) > 0

    async def mark_replaying(self, payload_id: int) -> bool:
        """Claim a FAILED or PENDING payload for replay.

        Returns:
            False if the payload is gone or no longer replayable.
        """
        result = await self.session.execute(
            update(RawPayloadModel)
            .where(
                RawPayloadModel.id == payload_id,
                RawPayloadModel.status.in_([s.value for s in REPLAYABLE_STATUSES]),
            )
            .values(
                status=RawPayloadStatus.PENDING.value,
                replay_count=RawPayloadModel.replay_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) > 0

