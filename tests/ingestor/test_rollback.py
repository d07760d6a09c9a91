"""Tests for rollback handling."""

from datetime import UTC, datetime

import pytest

from stacks_alert_pipeline.ingestor.models import Block, Transaction, TransactionType
from stacks_alert_pipeline.ingestor.payload import BlockEvent
from stacks_alert_pipeline.ingestor.rollback import RollbackInvalidator
from stacks_alert_pipeline.storage.repos import BlockRepository

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def invalidator() -> RollbackInvalidator:
    return RollbackInvalidator(clock=lambda: NOW)


class TestRollbackInvalidator:
    @pytest.mark.asyncio
    async def test_soft_deletes_known_block(self, async_session, invalidator) -> None:
        await BlockRepository(async_session).insert(
            Block(
                block_hash="0xb7",
                height=7,
                timestamp=NOW,
                transactions=(Transaction(tx_id="0xt7", sender="SP1", tx_type=TransactionType.COINBASE, success=True),),
            )
        )

        result = await invalidator.rollback(async_session, BlockEvent.from_dict({"block_identifier": {"hash": "0xb7"}}))

        assert result.rolled_back
        assert result.block_hash == "0xb7"
        assert result.invalidated_notifications == 0
        block = await BlockRepository(async_session).get_by_hash("0xb7")
        assert block is not None
        assert block.deleted_at == NOW

    @pytest.mark.asyncio
    async def test_missing_hash_ignored(self, async_session, invalidator, caplog) -> None:
        result = await invalidator.rollback(async_session, BlockEvent.from_dict({"block_identifier": {"index": 7}}))

        assert not result.rolled_back
        assert "without block hash" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_block_ignored(self, async_session, invalidator, caplog) -> None:
        result = await invalidator.rollback(async_session, BlockEvent.from_dict({"block_identifier": {"hash": "0xzz"}}))

        assert not result.rolled_back
        assert "unknown block 0xzz" in caplog.text
