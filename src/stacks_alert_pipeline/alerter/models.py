"""Data models for notification delivery."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from stacks_alert_pipeline.rules.models import AlertSeverity, NotificationChannel

UNKNOWN_RECIPIENT = "UNKNOWN"


class NotificationStatus(str, Enum):
    """Lifecycle of a persisted notification. SENT and FAILED are terminal."""

    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SENT = "SENT"
    FAILED = "FAILED"


class DeliveryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"
    PERMANENT = "PERMANENT"


class DeadLetterReason(str, Enum):
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    NO_TRANSPORT = "NO_TRANSPORT"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""

    status: DeliveryStatus
    error: str | None = None

    @classmethod
    def success(cls) -> DeliveryResult:
        return cls(DeliveryStatus.SUCCESS)

    @classmethod
    def retryable(cls, error: str) -> DeliveryResult:
        return cls(DeliveryStatus.RETRYABLE, error)

    @classmethod
    def permanent(cls, error: str) -> DeliveryResult:
        return cls(DeliveryStatus.PERMANENT, error)

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


@dataclass(frozen=True)
class NotificationEnvelope:
    """Everything a transport needs to deliver one notification."""

    notification_id: int
    channel: NotificationChannel
    recipient: str | None
    rule_id: int
    rule_name: str
    severity: AlertSeverity
    tx_id: str
    sender: str
    success: bool
    block_height: int
    triggered_at: datetime
    message: str
    event_type: str | None = None
    event_index: int | None = None
    contract_identifier: str | None = None
    event_description: str | None = None


class NotificationTransport(Protocol):
    """Delivers envelopes for one channel.

    Implementations report failures through the returned DeliveryResult;
    an exception is treated by the dispatcher as a retryable failure.
    """

    channel: NotificationChannel

    async def deliver(self, envelope: NotificationEnvelope) -> DeliveryResult: ...
