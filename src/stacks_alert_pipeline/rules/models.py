"""Alert rule model.

Rules are a closed set of criteria variants. Each variant knows how to
test itself against a transaction (and optionally one of its events) and
how to describe what triggered it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Union

from stacks_alert_pipeline.ingestor.models import ContractCall, Event, EventType, Transaction

WILDCARD = "*"
DEFAULT_COOLDOWN = timedelta(minutes=60)

_UINT_ARG = re.compile(r"^u?(\d+)$")

TOKEN_EVENT_TYPES = frozenset(
    {
        EventType.FT_TRANSFER,
        EventType.FT_MINT,
        EventType.FT_BURN,
        EventType.NFT_TRANSFER,
        EventType.NFT_MINT,
        EventType.NFT_BURN,
        EventType.STX_TRANSFER,
        EventType.STX_MINT,
        EventType.STX_BURN,
    }
)


class AlertRuleType(str, Enum):
    CONTRACT_CALL = "CONTRACT_CALL"
    TOKEN_TRANSFER = "TOKEN_TRANSFER"
    FAILED_TRANSACTION = "FAILED_TRANSACTION"
    PRINT_EVENT = "PRINT_EVENT"
    ADDRESS_ACTIVITY = "ADDRESS_ACTIVITY"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    SLACK = "SLACK"


class ActivityType(str, Enum):
    SENDER = "SENDER"
    RECIPIENT = "RECIPIENT"
    CONTRACT_DEPLOYER = "CONTRACT_DEPLOYER"


@dataclass(frozen=True)
class MatchContext:
    """What a rule is evaluated against: a transaction and optionally one event."""

    transaction: Transaction
    event: Event | None = None

    @property
    def contract_call(self) -> ContractCall | None:
        return self.transaction.contract_call

    @property
    def event_index(self) -> int | None:
        return self.event.event_index if self.event is not None else None


def largest_uint_argument(call: ContractCall) -> int | None:
    """Largest unsigned integer literal (``u100`` or ``100``) among call arguments."""
    values = []
    for arg in call.function_args:
        m = _UINT_ARG.match(arg.strip())
        if m:
            values.append(int(m.group(1)))
    return max(values) if values else None


@dataclass(frozen=True)
class ContractCallCriteria:
    """Fires on calls to a contract/function; either may be left open."""

    rule_type: ClassVar[AlertRuleType] = AlertRuleType.CONTRACT_CALL

    contract_identifier: str | None = None
    function_name: str | None = None
    amount_threshold: int | None = None

    def matches(self, context: MatchContext) -> bool:
        call = context.contract_call
        if call is None or context.event is not None:
            return False
        if self.contract_identifier is not None and self.contract_identifier != call.contract_identifier:
            return False
        if self.function_name is not None and self.function_name != call.function_name:
            return False
        if self.amount_threshold is not None:
            amount = largest_uint_argument(call)
            if amount is None or amount < self.amount_threshold:
                return False
        return True

    def describe(self, context: MatchContext) -> str:
        call = context.contract_call
        if call is None:
            return "Contract call detected"
        return f"Contract call detected: {call.contract_identifier}::{call.function_name}"


@dataclass(frozen=True)
class TokenTransferCriteria:
    """Fires on asset movement events, optionally above an amount."""

    rule_type: ClassVar[AlertRuleType] = AlertRuleType.TOKEN_TRANSFER

    asset_identifier: str | None = None
    event_type: EventType | None = None
    amount_threshold: int | None = None

    def matches(self, context: MatchContext) -> bool:
        event = context.event
        if event is None:
            return False
        if self.event_type is not None:
            if event.event_type != self.event_type:
                return False
        elif event.event_type not in TOKEN_EVENT_TYPES:
            return False
        if self.asset_identifier is not None and self.asset_identifier != event.asset_identifier:
            return False
        if self.amount_threshold is not None:
            if event.amount is None or event.amount < self.amount_threshold:
                return False
        return True

    def describe(self, context: MatchContext) -> str:
        if context.event is None:
            return "Token transfer detected"
        return f"Token transfer detected: {context.event.description}"


@dataclass(frozen=True)
class FailedTransactionCriteria:
    """Fires on failed transactions, optionally only calls to one contract/function."""

    rule_type: ClassVar[AlertRuleType] = AlertRuleType.FAILED_TRANSACTION

    contract_identifier: str | None = None
    function_name: str | None = None

    def matches(self, context: MatchContext) -> bool:
        tx = context.transaction
        if tx.success or context.event is not None:
            return False
        if self.contract_identifier is None and self.function_name is None:
            return True
        call = tx.contract_call
        if call is None:
            return False
        if self.contract_identifier is not None and self.contract_identifier != call.contract_identifier:
            return False
        if self.function_name is not None and self.function_name != call.function_name:
            return False
        return True

    def describe(self, context: MatchContext) -> str:
        call = context.contract_call
        suffix = f" ({call.contract_identifier}::{call.function_name})" if call else ""
        return f"Transaction failed: {context.transaction.tx_id}{suffix}"


@dataclass(frozen=True)
class PrintEventCriteria:
    """Fires on contract print events, optionally filtered by contract and topic."""

    rule_type: ClassVar[AlertRuleType] = AlertRuleType.PRINT_EVENT

    contract_identifier: str | None = None
    topic: str | None = None

    def matches(self, context: MatchContext) -> bool:
        event = context.event
        if event is None or event.event_type != EventType.SMART_CONTRACT_EVENT:
            return False
        if self.contract_identifier is not None and self.contract_identifier != event.contract_identifier:
            return False
        if self.topic is not None and self.topic != event.topic:
            return False
        return True

    def describe(self, context: MatchContext) -> str:
        event = context.event
        if event is None:
            return "Print event detected"
        return f"Print event detected: {event.contract_identifier} (topic: {event.topic})"


@dataclass(frozen=True)
class AddressActivityCriteria:
    """Fires when a watched address sends, receives or deploys."""

    rule_type: ClassVar[AlertRuleType] = AlertRuleType.ADDRESS_ACTIVITY

    watched_address: str = ""
    activity_types: frozenset[ActivityType] = field(default_factory=lambda: frozenset({ActivityType.SENDER}))

    def _activity(self, context: MatchContext) -> ActivityType | None:
        tx = context.transaction
        if ActivityType.SENDER in self.activity_types and tx.sender == self.watched_address:
            return ActivityType.SENDER
        if ActivityType.RECIPIENT in self.activity_types:
            if any(e.recipient == self.watched_address for e in tx.events):
                return ActivityType.RECIPIENT
        if ActivityType.CONTRACT_DEPLOYER in self.activity_types:
            if tx.contract_deployment is not None and tx.sender == self.watched_address:
                return ActivityType.CONTRACT_DEPLOYER
        return None

    def matches(self, context: MatchContext) -> bool:
        if not self.watched_address or context.event is not None:
            return False
        return self._activity(context) is not None

    def describe(self, context: MatchContext) -> str:
        tx = context.transaction
        activity = self._activity(context)
        if activity == ActivityType.RECIPIENT:
            return f"Address activity detected: {self.watched_address} received assets in transaction {tx.tx_id}"
        if activity == ActivityType.CONTRACT_DEPLOYER and tx.contract_deployment is not None:
            return (
                f"Address activity detected: {self.watched_address} deployed "
                f"{tx.contract_deployment.contract_identifier}"
            )
        return f"Address activity detected: {self.watched_address} sent transaction {tx.tx_id}"


RuleCriteria = Union[
    ContractCallCriteria,
    TokenTransferCriteria,
    FailedTransactionCriteria,
    PrintEventCriteria,
    AddressActivityCriteria,
]


@dataclass(frozen=True)
class AlertRule:
    """A user-defined alert rule as stored in the rule catalog."""

    id: int
    user_id: int
    name: str
    criteria: RuleCriteria
    severity: AlertSeverity = AlertSeverity.INFO
    active: bool = True
    cooldown: timedelta = DEFAULT_COOLDOWN
    last_triggered_at: datetime | None = None
    channels: frozenset[NotificationChannel] = frozenset()
    monitored_contract_id: int | None = None
    description: str | None = None
    notification_emails: tuple[str, ...] = ()
    webhook_url: str | None = None
    slack_webhook_url: str | None = None

    @property
    def rule_type(self) -> AlertRuleType:
        return self.criteria.rule_type

    def recipient_for(self, channel: NotificationChannel) -> str | None:
        """Delivery address for ``channel``, or None if not configured."""
        if channel == NotificationChannel.EMAIL:
            return ",".join(self.notification_emails) or None
        if channel == NotificationChannel.WEBHOOK:
            return self.webhook_url
        if channel == NotificationChannel.SLACK:
            return self.slack_webhook_url
        return None


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable projection of an AlertRule used by the rule index.

    Index keys use ``WILDCARD`` for criteria left open by the rule.
    """

    id: int
    rule_type: AlertRuleType
    severity: AlertSeverity
    name: str
    criteria: RuleCriteria
    cooldown: timedelta
    channels: frozenset[NotificationChannel]
    last_triggered_at: datetime | None = None
    contract_identifier: str | None = None
    function_name: str | None = None
    asset_identifier: str | None = None

    @classmethod
    def from_rule(cls, rule: AlertRule) -> RuleSnapshot:
        criteria = rule.criteria
        contract = function = asset = None
        if isinstance(criteria, ContractCallCriteria):
            contract = criteria.contract_identifier or WILDCARD
            function = criteria.function_name or WILDCARD
        elif isinstance(criteria, TokenTransferCriteria):
            asset = criteria.asset_identifier or WILDCARD
        elif isinstance(criteria, PrintEventCriteria):
            contract = criteria.contract_identifier or WILDCARD
        elif isinstance(criteria, FailedTransactionCriteria):
            contract = criteria.contract_identifier
            function = criteria.function_name
        return cls(
            id=rule.id,
            rule_type=rule.rule_type,
            severity=rule.severity,
            name=rule.name,
            criteria=criteria,
            cooldown=rule.cooldown,
            channels=rule.channels,
            last_triggered_at=rule.last_triggered_at,
            contract_identifier=contract,
            function_name=function,
            asset_identifier=asset,
        )

    def matches(self, context: MatchContext) -> bool:
        return self.criteria.matches(context)

    def cooldown_window_start(self, now: datetime) -> datetime:
        return now - self.cooldown

    def is_in_cooldown(self, now: datetime) -> bool:
        """Advisory check against the snapshot's copy of last_triggered_at.

        The authoritative check is the conditional update in the rule repository.
        """
        if self.last_triggered_at is None:
            return False
        return self.last_triggered_at > self.cooldown_window_start(now)
