"""Tests for idempotent payload processing, rollback and restore."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from stacks_alert_pipeline.ingestor.payload import ChainhookPayload
from stacks_alert_pipeline.ingestor.processor import PayloadProcessor
from stacks_alert_pipeline.rules.index import RuleIndex
from stacks_alert_pipeline.rules.models import ContractCallCriteria, TokenTransferCriteria
from stacks_alert_pipeline.storage.models import AlertNotificationModel, BlockModel
from stacks_alert_pipeline.storage.repos import (
    REORG_INVALIDATION_REASON,
    AlertNotificationRepository,
    AlertRuleRepository,
    BlockRepository,
    TransactionRepository,
)

SWAP_CONTRACT = "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR.arkadiko-swap-v2-1"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def processor(clock) -> PayloadProcessor:
    return PayloadProcessor(clock=clock)


@pytest.fixture
async def swap_rule(async_session, rule_factory):
    """Active contract-call rule on swap-x-for-y, webhook channel."""
    rule = await AlertRuleRepository(async_session).insert(
        rule_factory(ContractCallCriteria(contract_identifier=SWAP_CONTRACT, function_name="swap-x-for-y"))
    )
    await async_session.commit()
    return rule


@pytest.fixture
def index(swap_rule, clock) -> RuleIndex:
    return RuleIndex.build([swap_rule], now=clock())


async def _process(processor, session, data, index):
    result = await processor.process(session, ChainhookPayload.from_dict(data), index)
    await session.commit()
    return result


async def _count_notifications(session) -> int:
    result = await session.execute(select(func.count()).select_from(AlertNotificationModel))
    return int(result.scalar_one())


# ============================================================================
# Apply
# ============================================================================


class TestApply:
    """Applying new blocks."""

    @pytest.mark.asyncio
    async def test_new_block_persisted_and_matched(self, processor, async_session, index, payloads) -> None:
        data = payloads.payload(
            apply=[payloads.block("0xb100", 100, [payloads.contract_call_tx("0xt1", events=[payloads.print_event(0)])])]
        )

        result = await _process(processor, async_session, data, index)

        assert result.applied_blocks == 1
        assert result.duplicate_blocks == 0
        assert len(result.notifications) == 1
        envelope = result.notifications[0]
        assert envelope.tx_id == "0xt1"
        assert envelope.block_height == 100
        assert envelope.recipient == "https://hooks.example.com/stacks"

        block = await BlockRepository(async_session).get_by_hash("0xb100")
        assert block is not None and not block.deleted
        tx = await TransactionRepository(async_session).get_by_tx_id("0xt1")
        assert tx is not None
        assert await TransactionRepository(async_session).count_events(tx.id) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, processor, async_session, index, payloads, clock) -> None:
        data = payloads.payload(apply=[payloads.block("0xb100", 100, [payloads.contract_call_tx("0xt1")])])

        first = await _process(processor, async_session, data, index)
        clock.advance(hours=2)
        second = await _process(processor, async_session, data, index)

        assert first.applied_blocks == 1
        assert second.applied_blocks == 0
        assert second.duplicate_blocks == 1
        assert second.notifications == []
        assert await _count_notifications(async_session) == 1
        blocks = await async_session.execute(select(func.count()).select_from(BlockModel))
        assert blocks.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_malformed_transaction_skipped(self, processor, async_session, index, payloads) -> None:
        bad_tx = {"transaction_identifier": {}, "metadata": {"sender": "SP1"}}
        data = payloads.payload(
            apply=[payloads.block("0xb100", 100, [bad_tx, payloads.contract_call_tx("0xt2")])]
        )

        result = await _process(processor, async_session, data, index)

        assert result.applied_blocks == 1
        assert result.skipped_transactions == 1
        assert await TransactionRepository(async_session).get_by_tx_id("0xt2") is not None

    @pytest.mark.asyncio
    async def test_malformed_block_skipped(self, processor, async_session, index, payloads) -> None:
        data = payloads.payload(
            apply=[
                {"block_identifier": {"index": 99}, "transactions": []},
                payloads.block("0xb100", 100),
            ]
        )

        result = await _process(processor, async_session, data, index)

        assert result.skipped_blocks == 1
        assert result.applied_blocks == 1

    @pytest.mark.asyncio
    async def test_evaluation_error_does_not_abort(self, clock, async_session, index, payloads) -> None:
        matcher = MagicMock()
        matcher.evaluate_transaction = AsyncMock(side_effect=RuntimeError("boom"))
        processor = PayloadProcessor(matcher=matcher, clock=clock)
        data = payloads.payload(
            apply=[
                payloads.block(
                    "0xb100",
                    100,
                    [payloads.contract_call_tx("0xt1"), payloads.contract_call_tx("0xt2", index=1)],
                )
            ]
        )

        result = await _process(processor, async_session, data, index)

        assert result.applied_blocks == 1
        assert result.notifications == []
        assert matcher.evaluate_transaction.await_count == 2
        assert await TransactionRepository(async_session).get_by_tx_id("0xt2") is not None

    @pytest.mark.asyncio
    async def test_concurrently_stored_block_counts_as_duplicate(
        self, processor, async_session, index, payloads, monkeypatch
    ) -> None:
        await _process(
            processor,
            async_session,
            payloads.payload(apply=[payloads.block("0xb1", 1, [payloads.contract_call_tx("0xt1")])]),
            index,
        )
        # Another worker stored 0xb1 after our lookup.
        monkeypatch.setattr(BlockRepository, "get_by_hash", AsyncMock(return_value=None))
        data = payloads.payload(
            apply=[
                payloads.block("0xb1", 1, [payloads.contract_call_tx("0xt1")]),
                payloads.block("0xb2", 2, [payloads.contract_call_tx("0xt2")]),
            ]
        )

        result = await _process(processor, async_session, data, index)

        assert result.duplicate_blocks == 1
        assert result.applied_blocks == 1
        assert await TransactionRepository(async_session).get_by_tx_id("0xt2") is not None
        count = await async_session.execute(select(func.count()).select_from(BlockModel))
        assert count.scalar_one() == 2

    @pytest.mark.asyncio
    async def test_event_matches_record_event_slot(
        self, processor, async_session, payloads, rule_factory, clock
    ) -> None:
        rule = await AlertRuleRepository(async_session).insert(
            rule_factory(TokenTransferCriteria(amount_threshold=500))
        )
        await async_session.commit()
        index = RuleIndex.build([rule], now=clock())
        data = payloads.payload(
            apply=[
                payloads.block(
                    "0xb100",
                    100,
                    [
                        payloads.contract_call_tx(
                            "0xt1",
                            events=[payloads.ft_transfer_event(0, amount=100), payloads.ft_transfer_event(1, amount=900)],
                        )
                    ],
                )
            ]
        )

        result = await _process(processor, async_session, data, index)

        assert len(result.notifications) == 1
        assert result.notifications[0].event_index == 1
        assert result.notifications[0].event_type == "FT_TRANSFER"
        stored = await AlertNotificationRepository(async_session).get(result.notifications[0].notification_id)
        assert stored is not None
        assert stored.event_index == 1
        assert stored.event_id is not None


# ============================================================================
# Rollback and restore
# ============================================================================


class TestRollback:
    """Rolling back and re-applying blocks."""

    @pytest.mark.asyncio
    async def test_rollback_soft_deletes_and_invalidates(self, processor, async_session, index, payloads) -> None:
        block = payloads.block("0xb100", 100, [payloads.contract_call_tx("0xt1", events=[payloads.print_event(0)])])
        applied = await _process(processor, async_session, payloads.payload(apply=[block]), index)

        result = await _process(processor, async_session, payloads.payload(rollback=[block]), index)

        assert result.rolled_back_blocks == 1
        assert result.invalidated_notifications == 1
        stored_block = await BlockRepository(async_session).get_by_hash("0xb100")
        assert stored_block is not None and stored_block.deleted
        assert stored_block.deleted_at is not None
        assert await TransactionRepository(async_session).get_by_tx_id("0xt1") is None
        tx = await TransactionRepository(async_session).get_by_tx_id("0xt1", include_deleted=True)
        assert tx is not None and tx.deleted
        assert await TransactionRepository(async_session).count_events(tx.id, deleted=False) == 0

        notification = await AlertNotificationRepository(async_session).get(applied.notifications[0].notification_id)
        assert notification is not None
        assert notification.invalidated
        assert notification.invalidation_reason == REORG_INVALIDATION_REASON

    @pytest.mark.asyncio
    async def test_second_rollback_invalidates_nothing(self, processor, async_session, index, payloads) -> None:
        block = payloads.block("0xb100", 100, [payloads.contract_call_tx("0xt1")])
        await _process(processor, async_session, payloads.payload(apply=[block]), index)

        first = await _process(processor, async_session, payloads.payload(rollback=[block]), index)
        second = await _process(processor, async_session, payloads.payload(rollback=[block]), index)

        assert first.invalidated_notifications == 1
        assert second.rolled_back_blocks == 0
        assert second.invalidated_notifications == 0

    @pytest.mark.asyncio
    async def test_rollback_of_unknown_block_ignored(self, processor, async_session, index, payloads) -> None:
        result = await _process(
            processor, async_session, payloads.payload(rollback=[payloads.block("0xnope", 5)]), index
        )
        assert result.rolled_back_blocks == 0

    @pytest.mark.asyncio
    async def test_reapply_restores_without_resurrecting_notifications(
        self, processor, async_session, index, payloads, clock
    ) -> None:
        block = payloads.block("0xb100", 100, [payloads.contract_call_tx("0xt1", events=[payloads.print_event(0)])])
        applied = await _process(processor, async_session, payloads.payload(apply=[block]), index)
        await _process(processor, async_session, payloads.payload(rollback=[block]), index)
        clock.advance(hours=3)

        result = await _process(processor, async_session, payloads.payload(apply=[block]), index)

        assert result.restored_blocks == 1
        assert result.applied_blocks == 0
        assert result.notifications == []
        stored_block = await BlockRepository(async_session).get_by_hash("0xb100")
        assert stored_block is not None and not stored_block.deleted
        tx = await TransactionRepository(async_session).get_by_tx_id("0xt1")
        assert tx is not None and not tx.deleted
        assert await TransactionRepository(async_session).count_events(tx.id, deleted=False) == 1
        notification = await AlertNotificationRepository(async_session).get(applied.notifications[0].notification_id)
        assert notification is not None and notification.invalidated
        assert await _count_notifications(async_session) == 1

    @pytest.mark.asyncio
    async def test_reorg_replaces_block_at_same_height(
        self, processor, async_session, payloads, rule_factory, clock
    ) -> None:
        rule = await AlertRuleRepository(async_session).insert(
            rule_factory(ContractCallCriteria(contract_identifier=SWAP_CONTRACT), cooldown_minutes=0)
        )
        await async_session.commit()
        index = RuleIndex.build([rule], now=clock())
        orphan = payloads.block("0xorphan", 100, [payloads.contract_call_tx("0xt1")])
        canonical = payloads.block("0xcanonical", 100, [payloads.contract_call_tx("0xt1")])
        await _process(processor, async_session, payloads.payload(apply=[orphan]), index)

        result = await _process(
            processor, async_session, payloads.payload(apply=[canonical], rollback=[orphan]), index
        )

        assert result.rolled_back_blocks == 1
        assert result.invalidated_notifications == 1
        assert result.applied_blocks == 1
        assert len(result.notifications) == 1
        live = await TransactionRepository(async_session).get_by_tx_id("0xt1")
        canonical_block = await BlockRepository(async_session).get_by_hash("0xcanonical")
        assert live is not None and canonical_block is not None
        assert live.block_id == canonical_block.id

    @pytest.mark.asyncio
    async def test_restore_conflicting_with_live_block_skipped(
        self, processor, async_session, index, payloads
    ) -> None:
        orphan = payloads.block("0xorphan", 100, [payloads.contract_call_tx("0xt1")])
        canonical = payloads.block("0xcanonical", 100, [payloads.contract_call_tx("0xt9")])
        await _process(processor, async_session, payloads.payload(apply=[orphan]), index)
        await _process(processor, async_session, payloads.payload(apply=[canonical], rollback=[orphan]), index)

        result = await _process(processor, async_session, payloads.payload(apply=[orphan]), index)

        assert result.restored_blocks == 0
        assert result.skipped_blocks == 1
        orphan_block = await BlockRepository(async_session).get_by_hash("0xorphan")
        assert orphan_block is not None and orphan_block.deleted
