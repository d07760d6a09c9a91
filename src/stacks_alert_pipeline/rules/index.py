"""Multi-level rule index for candidate lookup.

The index is immutable. ``RuleIndexProvider`` rebuilds a fresh one when
the current index is too old or the rule catalog changed, then swaps the
reference, so readers always see a complete index.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from stacks_alert_pipeline.rules.models import WILDCARD, AlertRule, AlertRuleType, RuleSnapshot

if TYPE_CHECKING:
    from collections.abc import Mapping

    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 600
DEFAULT_VERSION_KEY = "stacks-alerts:rule-index:version"


@dataclass(frozen=True)
class IndexStats:
    total_rules: int
    type_categories: int
    contracts_indexed: int
    assets_indexed: int
    contract_function_combos: int


def _dedupe(groups: Iterable[Sequence[RuleSnapshot]]) -> list[RuleSnapshot]:
    seen: set[int] = set()
    out: list[RuleSnapshot] = []
    for group in groups:
        for snap in group:
            if snap.id not in seen:
                seen.add(snap.id)
                out.append(snap)
    return out


def _freeze(groups: dict) -> Mapping:
    return MappingProxyType({key: tuple(value) for key, value in groups.items()})


@dataclass(frozen=True)
class RuleIndex:
    """Snapshot of all active rules keyed for fast candidate lookup.

    Example:
        ```python
        index = RuleIndex.build(rules)
        for snap in index.candidates_for_contract_call("SP1.pool", "swap"):
            ...
        ```
    """

    by_type: Mapping[AlertRuleType, tuple[RuleSnapshot, ...]]
    by_contract: Mapping[str, tuple[RuleSnapshot, ...]]
    by_asset: Mapping[str, tuple[RuleSnapshot, ...]]
    by_contract_and_function: Mapping[tuple[str, str], tuple[RuleSnapshot, ...]]
    created_at: datetime
    total_rules: int = 0

    @classmethod
    def build(cls, rules: Iterable[AlertRule], *, now: datetime | None = None) -> RuleIndex:
        """Build an index from the active rules in ``rules`` in a single pass."""
        by_type: dict[AlertRuleType, list[RuleSnapshot]] = defaultdict(list)
        by_contract: dict[str, list[RuleSnapshot]] = defaultdict(list)
        by_asset: dict[str, list[RuleSnapshot]] = defaultdict(list)
        by_cf: dict[tuple[str, str], list[RuleSnapshot]] = defaultdict(list)
        total = 0

        for rule in rules:
            if not rule.active:
                continue
            snap = RuleSnapshot.from_rule(rule)
            total += 1
            by_type[snap.rule_type].append(snap)
            if snap.contract_identifier is not None:
                by_contract[snap.contract_identifier].append(snap)
            if snap.asset_identifier is not None:
                by_asset[snap.asset_identifier].append(snap)
            if snap.rule_type == AlertRuleType.CONTRACT_CALL:
                key = (snap.contract_identifier or WILDCARD, snap.function_name or WILDCARD)
                by_cf[key].append(snap)

        return cls(
            by_type=_freeze(by_type),
            by_contract=_freeze(by_contract),
            by_asset=_freeze(by_asset),
            by_contract_and_function=_freeze(by_cf),
            created_at=now or datetime.now(UTC),
            total_rules=total,
        )

    @classmethod
    def empty(cls) -> RuleIndex:
        return cls.build(())

    def get_by_type(self, rule_type: AlertRuleType) -> tuple[RuleSnapshot, ...]:
        return self.by_type.get(rule_type, ())

    def candidates_for_contract_call(self, contract_identifier: str, function_name: str) -> list[RuleSnapshot]:
        """Rules on (contract, function), (contract, *), (*, function) and (*, *)."""
        lookup = self.by_contract_and_function
        return _dedupe(
            lookup.get(key, ())
            for key in (
                (contract_identifier, function_name),
                (contract_identifier, WILDCARD),
                (WILDCARD, function_name),
                (WILDCARD, WILDCARD),
            )
        )

    def candidates_for_token_transfer(self, asset_identifier: str | None) -> list[RuleSnapshot]:
        groups = [self.by_asset.get(asset_identifier, ())] if asset_identifier else []
        groups.append(self.by_asset.get(WILDCARD, ()))
        return _dedupe(groups)

    def candidates_for_print_event(self, contract_identifier: str | None) -> list[RuleSnapshot]:
        groups = [self.by_contract.get(contract_identifier, ())] if contract_identifier else []
        groups.append(self.by_contract.get(WILDCARD, ()))
        return [s for s in _dedupe(groups) if s.rule_type == AlertRuleType.PRINT_EVENT]

    def is_stale(self, max_age_seconds: int, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return now - self.created_at > timedelta(seconds=max_age_seconds)

    def stats(self) -> IndexStats:
        return IndexStats(
            total_rules=self.total_rules,
            type_categories=len(self.by_type),
            contracts_indexed=len(self.by_contract),
            assets_indexed=len(self.by_asset),
            contract_function_combos=len(self.by_contract_and_function),
        )


RuleLoader = Callable[[], Awaitable[Sequence[AlertRule]]]


class RuleIndexProvider:
    """Owns the current RuleIndex and rebuilds it when needed.

    A rebuild happens when the index is older than ``max_age_seconds``,
    after ``invalidate()``, or when the shared Redis version counter moved
    (another process changed the rule catalog). Rebuilds are serialized;
    the new index replaces the old one in a single assignment.
    """

    def __init__(
        self,
        loader: RuleLoader,
        *,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        redis: Redis | None = None,
        version_key: str = DEFAULT_VERSION_KEY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._loader = loader
        self._max_age_seconds = max_age_seconds
        self._redis = redis
        self._version_key = version_key
        self._clock = clock or (lambda: datetime.now(UTC))

        self._index: RuleIndex | None = None
        # Bumped by invalidate(); an index is fresh only for the generation it was loaded at.
        self._generation = 0
        self._built_generation = -1
        self._seen_version: bytes | str | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> RuleIndex | None:
        return self._index

    async def get_index(self) -> RuleIndex:
        """Return a fresh-enough index, rebuilding it first if required."""
        remote_version = await self._read_remote_version()
        if not self._needs_rebuild(remote_version):
            assert self._index is not None
            return self._index

        async with self._lock:
            if self._needs_rebuild(remote_version):
                generation = self._generation
                rules = await self._loader()
                index = RuleIndex.build(rules, now=self._clock())
                self._index = index
                self._built_generation = generation
                self._seen_version = remote_version
                logger.info(
                    "Rule index rebuilt: %d rules, %d contracts, %d assets",
                    index.total_rules,
                    len(index.by_contract),
                    len(index.by_asset),
                )
            assert self._index is not None
            return self._index

    async def invalidate(self) -> None:
        """Mark the index stale here and, with Redis, in every other process."""
        self._generation += 1
        if self._redis is None:
            return
        try:
            await self._redis.incr(self._version_key)
        except RedisError as e:
            logger.warning("Failed to publish rule index invalidation: %s", e)

    def _needs_rebuild(self, remote_version: bytes | str | None) -> bool:
        if self._index is None or self._built_generation != self._generation:
            return True
        if self._redis is not None and remote_version != self._seen_version:
            return True
        return self._index.is_stale(self._max_age_seconds, now=self._clock())

    async def _read_remote_version(self) -> bytes | str | None:
        if self._redis is None:
            return None
        try:
            return await self._redis.get(self._version_key)
        except RedisError as e:
            logger.warning("Failed to read rule index version, relying on max age: %s", e)
            return self._seen_version
