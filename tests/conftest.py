"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from stacks_alert_pipeline.rules.models import (
    AlertRule,
    AlertSeverity,
    NotificationChannel,
    RuleCriteria,
)
from stacks_alert_pipeline.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)

SQLITE_MEMORY_URL = "sqlite+aiosqlite:///:memory:"

SWAP_CONTRACT = "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR.arkadiko-swap-v2-1"
USDA_CONTRACT = "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR.usda-token"
USDA_ASSET = f"{USDA_CONTRACT}::usda"
SENDER = "SP3K8BC0PPEVCV7NZ6QSRWPQ2JE9E5B6N3PA0KBR9"
RECIPIENT = "SP1P72Z3704VMT3DMHPP2CB8TGQWGDBHD3RPR9GZS"
WEBHOOK_URL = "https://hooks.example.com/stacks"
SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


class MutableClock:
    """Injectable clock whose time only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class PayloadBuilder:
    """Builds feed payload dicts in wire format."""

    base_timestamp = 1_760_000_000

    def ft_transfer_event(
        self,
        index: int,
        *,
        amount: int = 1_000,
        asset: str = USDA_ASSET,
        sender: str = SENDER,
        recipient: str = RECIPIENT,
        event_type: str = "FTTransferEvent",
    ) -> dict[str, Any]:
        return {
            "type": event_type,
            "position": {"index": index},
            "data": {
                "asset_identifier": asset,
                "amount": str(amount),
                "sender": sender,
                "recipient": recipient,
            },
        }

    def print_event(
        self,
        index: int,
        *,
        contract: str = SWAP_CONTRACT,
        topic: str = "print",
        value: Any = None,
    ) -> dict[str, Any]:
        return {
            "type": "SmartContractEvent",
            "position": {"index": index},
            "data": {
                "contract_identifier": contract,
                "topic": topic,
                "value": value if value is not None else {"action": "swap"},
            },
        }

    def contract_call_tx(
        self,
        tx_id: str,
        *,
        contract: str = SWAP_CONTRACT,
        method: str = "swap-x-for-y",
        args: Iterable[str] = ("u1000",),
        success: bool = True,
        sender: str = SENDER,
        events: Iterable[dict[str, Any]] = (),
        index: int = 0,
    ) -> dict[str, Any]:
        return {
            "transaction_identifier": {"hash": tx_id},
            "metadata": {
                "sender": sender,
                "success": success,
                "fee": "3000",
                "nonce": 7,
                "position": {"index": index},
                "result": "(ok true)" if success else "(err u1)",
                "kind": {
                    "type": "ContractCall",
                    "data": {"contract_identifier": contract, "method": method, "args": list(args)},
                },
                "receipt": {"events": list(events)},
            },
        }

    def deploy_tx(self, tx_id: str, *, contract: str, sender: str = SENDER) -> dict[str, Any]:
        return {
            "transaction_identifier": {"hash": tx_id},
            "metadata": {
                "sender": sender,
                "success": True,
                "fee": "10000",
                "nonce": 1,
                "kind": {
                    "type": "ContractDeployment",
                    "data": {"contract_identifier": contract, "code": "(define-public (hello) (ok u1))"},
                },
                "receipt": {"events": []},
            },
        }

    def block(
        self,
        block_hash: str,
        height: int,
        transactions: Iterable[dict[str, Any]] = (),
        *,
        parent_hash: str | None = None,
    ) -> dict[str, Any]:
        return {
            "block_identifier": {"hash": block_hash, "index": height},
            "parent_block_identifier": {"hash": parent_hash or f"0xparent{height - 1}", "index": height - 1},
            "timestamp": self.base_timestamp + height,
            "metadata": {
                "bitcoin_anchor_block_identifier": {"hash": f"0xburn{height}", "index": 800_000 + height},
                "miner": "SP000000000000000000002Q6VF78",
            },
            "transactions": list(transactions),
        }

    def payload(
        self,
        apply: Iterable[dict[str, Any]] = (),
        rollback: Iterable[dict[str, Any]] = (),
    ) -> dict[str, Any]:
        return {"apply": list(apply), "rollback": list(rollback), "chainhook": {"uuid": "test-hook"}}


def make_rule(
    criteria: RuleCriteria,
    *,
    name: str = "test rule",
    channels: Iterable[NotificationChannel] = (NotificationChannel.WEBHOOK,),
    cooldown_minutes: int = 60,
    **overrides: Any,
) -> AlertRule:
    rule = AlertRule(
        id=0,
        user_id=1,
        name=name,
        criteria=criteria,
        severity=AlertSeverity.WARNING,
        cooldown=timedelta(minutes=cooldown_minutes),
        channels=frozenset(channels),
        webhook_url=WEBHOOK_URL,
        slack_webhook_url=SLACK_URL,
        notification_emails=("ops@example.com",),
    )
    return replace(rule, **overrides) if overrides else rule


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def payloads() -> PayloadBuilder:
    """Builder for feed payload dicts."""
    return PayloadBuilder()


@pytest.fixture
def rule_factory():
    """Factory for AlertRule instances (id 0, to be assigned on insert)."""
    return make_rule


@pytest.fixture
def clock() -> MutableClock:
    """Clock fixed at a known instant."""
    return MutableClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


@pytest.fixture
async def async_engine():
    """Create an async in-memory SQLite engine with the full schema."""
    engine = create_async_db_engine(SQLITE_MEMORY_URL)
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = create_async_session_factory(async_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager():
    """DatabaseManager on a fresh in-memory database."""
    manager = DatabaseManager(SQLITE_MEMORY_URL)
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
