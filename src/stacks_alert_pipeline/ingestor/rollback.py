"""Handling of rollback block events (chain reorganizations)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from stacks_alert_pipeline.storage.repos import (
    REORG_INVALIDATION_REASON,
    AlertNotificationRepository,
    BlockRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from stacks_alert_pipeline.ingestor.payload import BlockEvent

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Outcome of rolling back one block event."""

    block_hash: str | None
    rolled_back: bool = False
    invalidated_notifications: int = 0


class RollbackInvalidator:
    """Soft-deletes rolled-back blocks and invalidates their notifications.

    A block that is unknown or already deleted is left alone, so replaying
    the same rollback invalidates nothing the second time.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    async def rollback(self, session: AsyncSession, block_event: BlockEvent) -> RollbackResult:
        block_hash = block_event.block_hash
        result = RollbackResult(block_hash=block_hash)
        if not block_hash:
            logger.warning("Rollback event without block hash ignored")
            return result

        blocks = BlockRepository(session)
        block = await blocks.get_by_hash(block_hash)
        if block is None:
            logger.warning("Rollback for unknown block %s ignored", block_hash)
            return result
        if block.deleted:
            logger.debug("Block %s already rolled back", block_hash)
            return result

        now = self._clock()
        counts = await blocks.soft_delete(block.id, now)
        invalidated = await AlertNotificationRepository(session).bulk_invalidate_by_block(
            block.id,
            at=now,
            reason=REORG_INVALIDATION_REASON,
        )
        result.rolled_back = True
        result.invalidated_notifications = invalidated
        logger.info(
            "Rolled back block %s (height %d): %d transactions, %d events, %d notifications invalidated",
            block_hash,
            block.height,
            counts.transactions,
            counts.events,
            invalidated,
        )
        return result
