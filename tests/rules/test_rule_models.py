"""Tests for rule criteria and rule snapshots."""

from datetime import UTC, datetime, timedelta

import pytest

from stacks_alert_pipeline.ingestor.models import (
    ContractCall,
    ContractDeployment,
    Event,
    EventType,
    Transaction,
    TransactionType,
)
from stacks_alert_pipeline.rules.models import (
    WILDCARD,
    ActivityType,
    AddressActivityCriteria,
    AlertRule,
    AlertRuleType,
    ContractCallCriteria,
    FailedTransactionCriteria,
    MatchContext,
    NotificationChannel,
    PrintEventCriteria,
    RuleSnapshot,
    TokenTransferCriteria,
    largest_uint_argument,
)

POOL = "SP1POOL.amm-pool-v2"
TOKEN = "SP1TOKEN.wrapped-btc::wbtc"
WATCHED = "SP3WATCHED"


def _call_tx(
    *,
    contract: str = POOL,
    function: str = "swap",
    args: tuple[str, ...] = (),
    success: bool = True,
    sender: str = "SP1SENDER",
    events: tuple[Event, ...] = (),
) -> Transaction:
    return Transaction(
        tx_id="0xcall",
        sender=sender,
        tx_type=TransactionType.CONTRACT_CALL,
        success=success,
        events=events,
        contract_call=ContractCall(contract_identifier=contract, function_name=function, function_args=args),
    )


def _transfer(amount: int | None = 1_000, *, asset: str = TOKEN, recipient: str = "SP2RECIPIENT") -> Event:
    return Event(
        event_type=EventType.FT_TRANSFER,
        event_index=0,
        asset_identifier=asset,
        amount=amount,
        sender="SP1SENDER",
        recipient=recipient,
    )


# ============================================================================
# Contract call
# ============================================================================


class TestContractCallCriteria:
    def test_matches_contract_and_function(self) -> None:
        criteria = ContractCallCriteria(contract_identifier=POOL, function_name="swap")
        assert criteria.matches(MatchContext(_call_tx()))
        assert not criteria.matches(MatchContext(_call_tx(function="add-liquidity")))
        assert not criteria.matches(MatchContext(_call_tx(contract="SP1OTHER.pool")))

    def test_open_criteria_match_any_call(self) -> None:
        assert ContractCallCriteria().matches(MatchContext(_call_tx(contract="SP9.any", function="any")))

    def test_never_matches_event_context(self) -> None:
        tx = _call_tx(events=(_transfer(),))
        assert not ContractCallCriteria().matches(MatchContext(tx, tx.events[0]))

    def test_non_call_never_matches(self) -> None:
        tx = Transaction(tx_id="0xcb", sender="SP1", tx_type=TransactionType.COINBASE, success=True)
        assert not ContractCallCriteria().matches(MatchContext(tx))

    def test_amount_threshold_uses_largest_uint_argument(self) -> None:
        criteria = ContractCallCriteria(contract_identifier=POOL, amount_threshold=5_000)
        assert criteria.matches(MatchContext(_call_tx(args=("u10", "u7500", "'SP1ABC"))))
        assert not criteria.matches(MatchContext(_call_tx(args=("u4999",))))
        assert not criteria.matches(MatchContext(_call_tx(args=("'SP1ABC", "true"))))

    def test_describe(self) -> None:
        text = ContractCallCriteria().describe(MatchContext(_call_tx()))
        assert text == f"Contract call detected: {POOL}::swap"


class TestLargestUintArgument:
    @pytest.mark.parametrize(
        ("args", "expected"),
        [
            (("u1", "u20", "3"), 20),
            ((" u42 ",), 42),
            (("-5", "i10", "'SP1", "0x01"), None),
            ((), None),
        ],
    )
    def test_largest(self, args: tuple[str, ...], expected: int | None) -> None:
        call = ContractCall(contract_identifier=POOL, function_name="f", function_args=args)
        assert largest_uint_argument(call) == expected


# ============================================================================
# Token transfer
# ============================================================================


class TestTokenTransferCriteria:
    def test_matches_transfer_events(self) -> None:
        tx = _call_tx(events=(_transfer(),))
        assert TokenTransferCriteria().matches(MatchContext(tx, tx.events[0]))

    def test_requires_event_context(self) -> None:
        assert not TokenTransferCriteria().matches(MatchContext(_call_tx()))

    def test_ignores_non_transfer_events_without_event_type(self) -> None:
        lock = Event(event_type=EventType.STX_LOCK, event_index=0, locked_amount=10)
        tx = _call_tx(events=(lock,))
        assert not TokenTransferCriteria().matches(MatchContext(tx, lock))

    def test_explicit_event_type(self) -> None:
        mint = Event(event_type=EventType.FT_MINT, event_index=0, asset_identifier=TOKEN, amount=5)
        tx = _call_tx(events=(mint,))
        assert TokenTransferCriteria(event_type=EventType.FT_MINT).matches(MatchContext(tx, mint))
        assert not TokenTransferCriteria(event_type=EventType.FT_TRANSFER).matches(MatchContext(tx, mint))

    def test_asset_filter(self) -> None:
        event = _transfer(asset="SP1OTHER.token::other")
        tx = _call_tx(events=(event,))
        assert not TokenTransferCriteria(asset_identifier=TOKEN).matches(MatchContext(tx, event))

    def test_amount_threshold(self) -> None:
        criteria = TokenTransferCriteria(amount_threshold=1_000)
        at = _transfer(1_000)
        below = _transfer(999)
        missing = _transfer(None)
        assert criteria.matches(MatchContext(_call_tx(events=(at,)), at))
        assert not criteria.matches(MatchContext(_call_tx(events=(below,)), below))
        assert not criteria.matches(MatchContext(_call_tx(events=(missing,)), missing))


# ============================================================================
# Failed transaction
# ============================================================================


class TestFailedTransactionCriteria:
    def test_any_failed_transaction(self) -> None:
        assert FailedTransactionCriteria().matches(MatchContext(_call_tx(success=False)))
        assert not FailedTransactionCriteria().matches(MatchContext(_call_tx(success=True)))

    def test_filter_requires_matching_call(self) -> None:
        criteria = FailedTransactionCriteria(contract_identifier=POOL, function_name="swap")
        assert criteria.matches(MatchContext(_call_tx(success=False)))
        assert not criteria.matches(MatchContext(_call_tx(success=False, function="other")))

    def test_filter_rejects_non_call(self) -> None:
        tx = Transaction(tx_id="0xt", sender="SP1", tx_type=TransactionType.TOKEN_TRANSFER, success=False)
        assert not FailedTransactionCriteria(contract_identifier=POOL).matches(MatchContext(tx))
        assert FailedTransactionCriteria().matches(MatchContext(tx))

    def test_describe_includes_call(self) -> None:
        text = FailedTransactionCriteria().describe(MatchContext(_call_tx(success=False)))
        assert text == f"Transaction failed: 0xcall ({POOL}::swap)"


# ============================================================================
# Print event
# ============================================================================


class TestPrintEventCriteria:
    def _print(self, *, contract: str = POOL, topic: str = "print") -> Event:
        return Event(
            event_type=EventType.SMART_CONTRACT_EVENT,
            event_index=1,
            contract_identifier=contract,
            topic=topic,
            value='{"action": "swap"}',
        )

    def test_matches_contract_and_topic(self) -> None:
        event = self._print()
        tx = _call_tx(events=(event,))
        assert PrintEventCriteria(contract_identifier=POOL, topic="print").matches(MatchContext(tx, event))
        assert not PrintEventCriteria(topic="other").matches(MatchContext(tx, event))
        assert not PrintEventCriteria(contract_identifier="SP9.x").matches(MatchContext(tx, event))

    def test_ignores_other_events(self) -> None:
        event = _transfer()
        assert not PrintEventCriteria().matches(MatchContext(_call_tx(events=(event,)), event))


# ============================================================================
# Address activity
# ============================================================================


class TestAddressActivityCriteria:
    def test_sender(self) -> None:
        criteria = AddressActivityCriteria(watched_address=WATCHED)
        assert criteria.matches(MatchContext(_call_tx(sender=WATCHED)))
        assert not criteria.matches(MatchContext(_call_tx()))

    def test_recipient_checks_any_event(self) -> None:
        criteria = AddressActivityCriteria(
            watched_address=WATCHED, activity_types=frozenset({ActivityType.RECIPIENT})
        )
        tx = _call_tx(events=(_transfer(recipient="SP2OTHER"), _transfer(recipient=WATCHED)))
        assert criteria.matches(MatchContext(tx))
        assert "received assets" in criteria.describe(MatchContext(tx))

    def test_contract_deployer(self) -> None:
        criteria = AddressActivityCriteria(
            watched_address=WATCHED, activity_types=frozenset({ActivityType.CONTRACT_DEPLOYER})
        )
        deploy = Transaction(
            tx_id="0xdeploy",
            sender=WATCHED,
            tx_type=TransactionType.CONTRACT_DEPLOYMENT,
            success=True,
            contract_deployment=ContractDeployment(contract_identifier=f"{WATCHED}.token", contract_name="token"),
        )
        assert criteria.matches(MatchContext(deploy))
        assert criteria.describe(MatchContext(deploy)).endswith(f"deployed {WATCHED}.token")
        assert not criteria.matches(MatchContext(_call_tx(sender=WATCHED)))

    def test_empty_address_never_matches(self) -> None:
        assert not AddressActivityCriteria().matches(MatchContext(_call_tx(sender="")))


# ============================================================================
# Rules and snapshots
# ============================================================================


class TestAlertRule:
    def _rule(self, criteria) -> AlertRule:
        return AlertRule(
            id=7,
            user_id=1,
            name="whale",
            criteria=criteria,
            channels=frozenset({NotificationChannel.WEBHOOK, NotificationChannel.EMAIL}),
            notification_emails=("a@example.com", "b@example.com"),
            webhook_url="https://hooks.example.com/x",
        )

    def test_rule_type_follows_criteria(self) -> None:
        assert self._rule(TokenTransferCriteria()).rule_type == AlertRuleType.TOKEN_TRANSFER

    def test_recipient_for(self) -> None:
        rule = self._rule(ContractCallCriteria())
        assert rule.recipient_for(NotificationChannel.WEBHOOK) == "https://hooks.example.com/x"
        assert rule.recipient_for(NotificationChannel.EMAIL) == "a@example.com,b@example.com"
        assert rule.recipient_for(NotificationChannel.SLACK) is None

    def test_snapshot_keys_use_wildcard(self) -> None:
        snap = RuleSnapshot.from_rule(self._rule(ContractCallCriteria(contract_identifier=POOL)))
        assert snap.contract_identifier == POOL
        assert snap.function_name == WILDCARD
        assert snap.asset_identifier is None

        token_snap = RuleSnapshot.from_rule(self._rule(TokenTransferCriteria()))
        assert token_snap.asset_identifier == WILDCARD

    def test_snapshot_cooldown(self) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        rule = AlertRule(
            id=1,
            user_id=1,
            name="r",
            criteria=ContractCallCriteria(),
            cooldown=timedelta(minutes=10),
            last_triggered_at=now - timedelta(minutes=5),
        )
        snap = RuleSnapshot.from_rule(rule)

        assert snap.cooldown_window_start(now) == now - timedelta(minutes=10)
        assert snap.is_in_cooldown(now)
        assert not snap.is_in_cooldown(now + timedelta(minutes=6))
