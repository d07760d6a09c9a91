"""Rule matching engine.

Looks up candidate rules for a persisted transaction in the RuleIndex,
re-checks each candidate's full predicate, claims the rule's cooldown
atomically and records one notification per configured channel.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from stacks_alert_pipeline.alerter.formatter import build_message
from stacks_alert_pipeline.alerter.models import NotificationEnvelope
from stacks_alert_pipeline.ingestor.models import EventType, Transaction
from stacks_alert_pipeline.rules.models import TOKEN_EVENT_TYPES, AlertRuleType, MatchContext, RuleSnapshot
from stacks_alert_pipeline.storage.repos import AlertNotificationRepository, AlertRuleRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from stacks_alert_pipeline.rules.index import RuleIndex

logger = logging.getLogger(__name__)


class RuleMatchingEngine:
    """Evaluates transactions against the active rule set.

    Each matching rule is claimed with a conditional update on
    ``last_triggered_at``; only the winner of that update creates
    notifications. Failures are isolated per rule: the rule's writes are
    rolled back to a savepoint and evaluation continues.

    Example:
        ```python
        engine = RuleMatchingEngine()
        envelopes = await engine.evaluate_transaction(
            session, tx, transaction_row_id=42, event_row_ids={0: 7},
            block_height=150_000, index=index,
        )
        ```
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    def candidate_contexts(
        self, tx: Transaction, index: RuleIndex
    ) -> Iterator[tuple[MatchContext, RuleSnapshot]]:
        """Yield (context, candidate rule) pairs for ``tx``."""
        tx_context = MatchContext(transaction=tx)

        call = tx.contract_call
        if call is not None:
            for snap in index.candidates_for_contract_call(call.contract_identifier, call.function_name):
                yield tx_context, snap

        for event in tx.events:
            event_context = MatchContext(transaction=tx, event=event)
            if event.event_type in TOKEN_EVENT_TYPES:
                for snap in index.candidates_for_token_transfer(event.asset_identifier):
                    yield event_context, snap
            elif event.event_type == EventType.SMART_CONTRACT_EVENT:
                for snap in index.candidates_for_print_event(event.contract_identifier):
                    yield event_context, snap

        if not tx.success:
            for snap in index.get_by_type(AlertRuleType.FAILED_TRANSACTION):
                yield tx_context, snap

        for snap in index.get_by_type(AlertRuleType.ADDRESS_ACTIVITY):
            yield tx_context, snap

    async def evaluate_transaction(
        self,
        session: AsyncSession,
        tx: Transaction,
        *,
        transaction_row_id: int,
        event_row_ids: Mapping[int, int],
        block_height: int,
        index: RuleIndex,
    ) -> list[NotificationEnvelope]:
        """Match ``tx`` against ``index`` and record notifications.

        Args:
            session: Session of the ingestion unit of work.
            tx: The persisted transaction.
            transaction_row_id: Row id of the transaction.
            event_row_ids: Event row ids keyed by event index.
            block_height: Height of the owning block.
            index: Current rule index.

        Returns:
            Envelopes of the notifications created, to be dispatched after commit.
        """
        envelopes: list[NotificationEnvelope] = []
        for context, snap in self.candidate_contexts(tx, index):
            try:
                if not snap.matches(context):
                    continue
                if snap.is_in_cooldown(self._clock()):
                    logger.debug("Rule %d still in cooldown, skipping tx %s", snap.id, tx.tx_id)
                    continue
                async with session.begin_nested():
                    envelopes.extend(
                        await self._trigger(
                            session,
                            snap,
                            context,
                            transaction_row_id=transaction_row_id,
                            event_row_ids=event_row_ids,
                            block_height=block_height,
                        )
                    )
            except Exception as e:
                logger.error(
                    "Error evaluating rule %d against tx %s (event %s): %s",
                    snap.id,
                    tx.tx_id,
                    context.event_index,
                    e,
                )
        return envelopes

    async def _trigger(
        self,
        session: AsyncSession,
        snap: RuleSnapshot,
        context: MatchContext,
        *,
        transaction_row_id: int,
        event_row_ids: Mapping[int, int],
        block_height: int,
    ) -> list[NotificationEnvelope]:
        rules = AlertRuleRepository(session)
        now = self._clock()
        won = await rules.mark_triggered_if_out_of_cooldown(
            snap.id,
            now=now,
            window_start=snap.cooldown_window_start(now),
        )
        if not won:
            logger.debug("Rule %d (%s) in cooldown, skipping", snap.id, snap.name)
            return []

        rule = await rules.get(snap.id)
        if rule is None or not rule.active:
            logger.warning("Rule %d matched but is no longer available, skipping", snap.id)
            return []

        tx = context.transaction
        event = context.event
        description = snap.criteria.describe(context)
        message = build_message(
            rule,
            trigger_description=description,
            tx_id=tx.tx_id,
            block_height=block_height,
            sender=tx.sender,
            success=tx.success,
            triggered_at=now,
        )
        event_row_id = event_row_ids.get(event.event_index) if event is not None else None

        notifications = AlertNotificationRepository(session)
        envelopes = []
        for channel in sorted(rule.channels, key=lambda c: c.value):
            notification_id = await notifications.insert_if_absent(
                alert_rule_id=rule.id,
                transaction_id=transaction_row_id,
                event_id=event_row_id,
                event_index=context.event_index,
                channel=channel,
                message=message,
                triggered_at=now,
            )
            if notification_id is None:
                logger.debug(
                    "Notification for rule %d, tx %s, channel %s already exists",
                    rule.id,
                    tx.tx_id,
                    channel.value,
                )
                continue
            envelopes.append(
                NotificationEnvelope(
                    notification_id=notification_id,
                    channel=channel,
                    recipient=rule.recipient_for(channel),
                    rule_id=rule.id,
                    rule_name=rule.name,
                    severity=rule.severity,
                    tx_id=tx.tx_id,
                    sender=tx.sender,
                    success=tx.success,
                    block_height=block_height,
                    triggered_at=now,
                    message=message,
                    event_type=event.event_type.value if event is not None else None,
                    event_index=event.event_index if event is not None else None,
                    contract_identifier=event.contract_identifier if event is not None else None,
                    event_description=event.description if event is not None else None,
                )
            )

        logger.info(
            "Rule %d (%s) triggered by tx %s: %d notification(s)",
            rule.id,
            rule.name,
            tx.tx_id,
            len(envelopes),
        )
        return envelopes
