"""Tests for the rule index and its provider."""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from stacks_alert_pipeline.rules.index import RuleIndex, RuleIndexProvider
from stacks_alert_pipeline.rules.models import (
    AlertRuleType,
    ContractCallCriteria,
    FailedTransactionCriteria,
    PrintEventCriteria,
    TokenTransferCriteria,
)

POOL = "SP1POOL.amm-pool-v2"
TOKEN = "SP1TOKEN.wrapped-btc::wbtc"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _ids(snaps) -> set[int]:
    return {s.id for s in snaps}


@pytest.fixture
def rules(rule_factory):
    """A(POOL, swap), B(POOL, *), C(*, *), D token on TOKEN, E any token, F print on POOL, G failed tx."""
    return [
        replace(rule_factory(ContractCallCriteria(contract_identifier=POOL, function_name="swap")), id=1),
        replace(rule_factory(ContractCallCriteria(contract_identifier=POOL)), id=2),
        replace(rule_factory(ContractCallCriteria()), id=3),
        replace(rule_factory(TokenTransferCriteria(asset_identifier=TOKEN)), id=4),
        replace(rule_factory(TokenTransferCriteria()), id=5),
        replace(rule_factory(PrintEventCriteria(contract_identifier=POOL)), id=6),
        replace(rule_factory(FailedTransactionCriteria(contract_identifier=POOL)), id=7),
    ]


# ============================================================================
# RuleIndex
# ============================================================================


class TestRuleIndex:
    """Tests for RuleIndex lookups."""

    def test_contract_call_candidates_include_wildcards(self, rules) -> None:
        index = RuleIndex.build(rules, now=NOW)

        assert _ids(index.candidates_for_contract_call(POOL, "swap")) == {1, 2, 3}
        assert _ids(index.candidates_for_contract_call(POOL, "add-liquidity")) == {2, 3}
        assert _ids(index.candidates_for_contract_call("SP9.other", "swap")) == {3}

    def test_function_only_rule(self, rule_factory) -> None:
        index = RuleIndex.build(
            [replace(rule_factory(ContractCallCriteria(function_name="transfer")), id=9)], now=NOW
        )
        assert _ids(index.candidates_for_contract_call("SP9.any", "transfer")) == {9}
        assert index.candidates_for_contract_call("SP9.any", "swap") == []

    def test_candidates_are_deduplicated(self, rules) -> None:
        index = RuleIndex.build(rules, now=NOW)
        candidates = index.candidates_for_contract_call(POOL, "swap")
        assert len(candidates) == len(_ids(candidates))

    def test_token_transfer_candidates(self, rules) -> None:
        index = RuleIndex.build(rules, now=NOW)

        assert _ids(index.candidates_for_token_transfer(TOKEN)) == {4, 5}
        assert _ids(index.candidates_for_token_transfer("SP9.other::x")) == {5}
        assert _ids(index.candidates_for_token_transfer(None)) == {5}

    def test_print_event_candidates_only_print_rules(self, rules) -> None:
        index = RuleIndex.build(rules, now=NOW)

        # Contract-call and failed-tx rules on POOL share the contract key.
        assert _ids(index.candidates_for_print_event(POOL)) == {6}
        assert index.candidates_for_print_event("SP9.other") == []

    def test_by_type(self, rules) -> None:
        index = RuleIndex.build(rules, now=NOW)

        assert _ids(index.get_by_type(AlertRuleType.FAILED_TRANSACTION)) == {7}
        assert index.get_by_type(AlertRuleType.ADDRESS_ACTIVITY) == ()

    def test_inactive_rules_excluded(self, rules) -> None:
        rules[0] = replace(rules[0], active=False)
        index = RuleIndex.build(rules, now=NOW)

        assert index.total_rules == 6
        assert _ids(index.candidates_for_contract_call(POOL, "swap")) == {2, 3}

    def test_stats(self, rules) -> None:
        stats = RuleIndex.build(rules, now=NOW).stats()

        assert stats.total_rules == 7
        assert stats.type_categories == 4
        assert stats.assets_indexed == 2
        assert stats.contract_function_combos == 3

    def test_is_stale(self) -> None:
        index = RuleIndex.build([], now=NOW)

        assert not index.is_stale(600, now=NOW + timedelta(seconds=600))
        assert index.is_stale(600, now=NOW + timedelta(seconds=601))

    def test_empty(self) -> None:
        index = RuleIndex.empty()
        assert index.total_rules == 0
        assert index.candidates_for_contract_call(POOL, "swap") == []


# ============================================================================
# RuleIndexProvider
# ============================================================================


class TestRuleIndexProvider:
    """Tests for rebuild triggers."""

    @pytest.fixture
    def loader(self, rules) -> AsyncMock:
        return AsyncMock(return_value=rules)

    @pytest.mark.asyncio
    async def test_builds_once_until_stale(self, loader, clock) -> None:
        provider = RuleIndexProvider(loader, max_age_seconds=60, clock=clock)

        first = await provider.get_index()
        clock.advance(seconds=30)
        second = await provider.get_index()
        clock.advance(seconds=31)
        third = await provider.get_index()

        assert first is second
        assert third is not first
        assert loader.await_count == 2
        assert provider.current is third

    @pytest.mark.asyncio
    async def test_invalidate_forces_rebuild(self, loader, clock) -> None:
        provider = RuleIndexProvider(loader, max_age_seconds=600, clock=clock)
        first = await provider.get_index()

        await provider.invalidate()
        second = await provider.get_index()

        assert second is not first
        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_remote_version_change_forces_rebuild(self, loader, clock) -> None:
        redis = AsyncMock()
        redis.get.return_value = b"1"
        provider = RuleIndexProvider(loader, max_age_seconds=600, redis=redis, version_key="v", clock=clock)

        first = await provider.get_index()
        same = await provider.get_index()
        redis.get.return_value = b"2"
        changed = await provider.get_index()

        assert first is same
        assert changed is not first
        assert loader.await_count == 2
        redis.get.assert_awaited_with("v")

    @pytest.mark.asyncio
    async def test_invalidate_publishes_version(self, loader, clock) -> None:
        redis = AsyncMock()
        provider = RuleIndexProvider(loader, redis=redis, version_key="v", clock=clock)

        await provider.invalidate()

        redis.incr.assert_awaited_once_with("v")

    @pytest.mark.asyncio
    async def test_redis_errors_fall_back_to_max_age(self, loader, clock, caplog) -> None:
        redis = AsyncMock()
        redis.get.return_value = b"1"
        provider = RuleIndexProvider(loader, max_age_seconds=600, redis=redis, clock=clock)
        first = await provider.get_index()

        redis.get.side_effect = RedisError("connection refused")
        redis.incr.side_effect = RedisError("connection refused")
        again = await provider.get_index()
        await provider.invalidate()
        rebuilt = await provider.get_index()

        assert again is first
        assert rebuilt is not first
        assert "Failed to read rule index version" in caplog.text
        assert "Failed to publish rule index invalidation" in caplog.text

    @pytest.mark.asyncio
    async def test_invalidate_during_rebuild_is_not_lost(self, rules, clock) -> None:
        catalog = []
        loading = asyncio.Event()
        gate = asyncio.Event()

        async def loader():
            loaded = list(catalog)
            loading.set()
            await gate.wait()
            return loaded

        provider = RuleIndexProvider(loader, max_age_seconds=600, clock=clock)
        rebuild = asyncio.create_task(provider.get_index())
        await loading.wait()

        catalog.append(rules[0])
        await provider.invalidate()
        gate.set()
        stale = await rebuild
        fresh = await provider.get_index()

        assert stale.total_rules == 0
        assert fresh.total_rules == 1
