"""Idempotent processing of feed payloads.

``PayloadProcessor.process`` runs inside one session (one unit of work):
rollbacks first, then applies. Each applied block is either a duplicate
(no-op), a restore of a rolled-back block, or a new block inserted under a
savepoint. New blocks are then matched against the rule index.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from stacks_alert_pipeline.ingestor.parser import PayloadParseError, PayloadParser
from stacks_alert_pipeline.ingestor.rollback import RollbackInvalidator
from stacks_alert_pipeline.rules.matcher import RuleMatchingEngine
from stacks_alert_pipeline.storage.repos import BlockRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from stacks_alert_pipeline.alerter.models import NotificationEnvelope
    from stacks_alert_pipeline.ingestor.models import Block
    from stacks_alert_pipeline.ingestor.payload import BlockEvent, ChainhookPayload
    from stacks_alert_pipeline.rules.index import RuleIndex
    from stacks_alert_pipeline.storage.repos import StoredBlock

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """What one payload did to the store."""

    applied_blocks: int = 0
    restored_blocks: int = 0
    duplicate_blocks: int = 0
    skipped_blocks: int = 0
    rolled_back_blocks: int = 0
    skipped_transactions: int = 0
    invalidated_notifications: int = 0
    notifications: list[NotificationEnvelope] = field(default_factory=list)


class PayloadProcessor:
    """Applies and rolls back feed block events against the store.

    Example:
        ```python
        processor = PayloadProcessor()
        async with db.get_async_session() as session:
            result = await processor.process(session, payload, index)
        ```
    """

    def __init__(
        self,
        *,
        parser: PayloadParser | None = None,
        matcher: RuleMatchingEngine | None = None,
        invalidator: RollbackInvalidator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        clock = clock or (lambda: datetime.now(UTC))
        self._parser = parser or PayloadParser()
        self._matcher = matcher or RuleMatchingEngine(clock=clock)
        self._invalidator = invalidator or RollbackInvalidator(clock=clock)

    async def process(
        self,
        session: AsyncSession,
        payload: ChainhookPayload,
        index: RuleIndex,
    ) -> ProcessingResult:
        """Process every rollback, then every apply, of ``payload``.

        The caller owns the transaction; nothing here commits.
        """
        result = ProcessingResult()

        for block_event in payload.rollback:
            rollback = await self._invalidator.rollback(session, block_event)
            if rollback.rolled_back:
                result.rolled_back_blocks += 1
                result.invalidated_notifications += rollback.invalidated_notifications

        for block_event in payload.apply:
            await self._apply(session, block_event, index, result)

        logger.info(
            "Payload processed: %d applied, %d restored, %d duplicate, %d rolled back, %d notifications",
            result.applied_blocks,
            result.restored_blocks,
            result.duplicate_blocks,
            result.rolled_back_blocks,
            len(result.notifications),
        )
        return result

    async def _apply(
        self,
        session: AsyncSession,
        block_event: BlockEvent,
        index: RuleIndex,
        result: ProcessingResult,
    ) -> None:
        block_hash = block_event.block_hash
        blocks = BlockRepository(session)

        if block_hash:
            existing = await blocks.get_by_hash(block_hash)
            if existing is not None and not existing.deleted:
                logger.debug("Block %s already applied", block_hash)
                result.duplicate_blocks += 1
                return
            if existing is not None:
                await self._restore(session, blocks, existing.id, block_hash, result)
                return

        try:
            block = self._parse_block(block_event, result)
        except PayloadParseError as e:
            logger.error("Skipping malformed block %s: %s", block_hash, e)
            result.skipped_blocks += 1
            return

        try:
            async with session.begin_nested():
                stored = await blocks.insert(block)
        except IntegrityError:
            logger.info("Block %s was stored concurrently, treating as already processed", block.block_hash)
            result.duplicate_blocks += 1
            return

        result.applied_blocks += 1
        logger.info(
            "Applied block %s at height %d with %d transactions",
            block.block_hash,
            block.height,
            len(block.transactions),
        )
        result.notifications.extend(await self._evaluate(session, block, stored, index))

    async def _restore(
        self,
        session: AsyncSession,
        blocks: BlockRepository,
        block_id: int,
        block_hash: str,
        result: ProcessingResult,
    ) -> None:
        # Invalidated notifications stay invalidated and rules are not re-run.
        try:
            async with session.begin_nested():
                counts = await blocks.restore(block_id)
        except IntegrityError as e:
            logger.error("Cannot restore block %s, a live block or transaction conflicts: %s", block_hash, e)
            result.skipped_blocks += 1
            return
        result.restored_blocks += 1
        logger.info(
            "Restored block %s: %d transactions, %d events",
            block_hash,
            counts.transactions,
            counts.events,
        )

    def _parse_block(self, block_event: BlockEvent, result: ProcessingResult) -> Block:
        header = self._parser.parse_block(block_event)
        transactions = []
        seen: set[str] = set()
        for tx_payload in block_event.transactions:
            try:
                tx = self._parser.parse_transaction(tx_payload)
            except (PayloadParseError, KeyError, TypeError, ValueError) as e:
                logger.error("Skipping malformed transaction %s in block %s: %s", tx_payload.tx_hash, header.block_hash, e)
                result.skipped_transactions += 1
                continue
            if tx.tx_id in seen:
                logger.warning("Duplicate transaction %s in block %s ignored", tx.tx_id, header.block_hash)
                continue
            seen.add(tx.tx_id)
            transactions.append(tx)
        return replace(header, transactions=tuple(transactions))

    async def _evaluate(
        self,
        session: AsyncSession,
        block: Block,
        stored: StoredBlock,
        index: RuleIndex,
    ) -> list[NotificationEnvelope]:
        envelopes: list[NotificationEnvelope] = []
        event_ids_by_tx: dict[str, dict[int, int]] = defaultdict(dict)
        for (tx_id, event_index), row_id in stored.event_ids.items():
            event_ids_by_tx[tx_id][event_index] = row_id

        for tx in block.transactions:
            try:
                # A failed evaluation rolls back its own cooldown and notification writes.
                async with session.begin_nested():
                    matched = await self._matcher.evaluate_transaction(
                        session,
                        tx,
                        transaction_row_id=stored.transaction_ids[tx.tx_id],
                        event_row_ids=event_ids_by_tx.get(tx.tx_id, {}),
                        block_height=block.height,
                        index=index,
                    )
                envelopes.extend(matched)
            except Exception as e:
                logger.error("Error evaluating transaction %s: %s", tx.tx_id, e)
        return envelopes
