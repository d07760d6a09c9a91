"""Commit-gated notification dispatch.

Notifications created during ingestion are collected in a DispatchOutbox
and only handed to the NotificationDispatcher once the ingestion
transaction has committed. The dispatcher delivers each one through the
transport registered for its channel, retrying a bounded number of times
and moving failures to the dead-letter queue.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from stacks_alert_pipeline.alerter.models import (
    UNKNOWN_RECIPIENT,
    DeadLetterReason,
    DeliveryResult,
    DeliveryStatus,
    NotificationEnvelope,
    NotificationStatus,
    NotificationTransport,
)
from stacks_alert_pipeline.storage.repos import (
    AlertNotificationRepository,
    DeadLetterEntryDTO,
    DeadLetterRepository,
)

if TYPE_CHECKING:
    from stacks_alert_pipeline.rules.models import NotificationChannel
    from stacks_alert_pipeline.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_GRACE = timedelta(minutes=5)

_TERMINAL = (NotificationStatus.SENT, NotificationStatus.FAILED)


class DispatchOutbox:
    """Holds notifications of one unit of work until it commits.

    ``release()`` hands them over (call only after commit); ``discard()``
    drops them (call when the unit of work aborted).
    """

    def __init__(self) -> None:
        self._pending: list[NotificationEnvelope] = []

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, envelopes: Iterable[NotificationEnvelope]) -> None:
        self._pending.extend(envelopes)

    def release(self) -> list[NotificationEnvelope]:
        released, self._pending = self._pending, []
        return released

    def discard(self) -> int:
        dropped = len(self._pending)
        self._pending = []
        return dropped


@dataclass
class DispatchSummary:
    """Outcome counts of one dispatch run."""

    sent: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def merge(self, other: DispatchSummary) -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.dead_lettered += other.dead_lettered
        self.skipped += other.skipped


class NotificationDispatcher:
    """Delivers committed notifications through channel transports.

    Per notification: up to ``max_attempts`` immediate attempts. Success
    marks it SENT. A retryable failure increments the attempt count and
    leaves it RETRYING until attempts run out. A permanent failure,
    exhaustion, or a channel without transport writes a dead-letter entry
    and marks it FAILED. Invalidated notifications are skipped. Nothing is
    raised to the caller.

    Example:
        ```python
        dispatcher = NotificationDispatcher(db, [WebhookTransport()])
        summary = await dispatcher.dispatch(outbox.release())
        ```
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        transports: Iterable[NotificationTransport],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._db = db_manager
        self._transports: dict[NotificationChannel, NotificationTransport] = {t.channel: t for t in transports}
        self._max_attempts = max_attempts
        self._dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def channels(self) -> list[NotificationChannel]:
        return sorted(self._transports, key=lambda c: c.value)

    async def dispatch(self, envelopes: Iterable[NotificationEnvelope]) -> DispatchSummary:
        """Deliver ``envelopes`` one after another."""
        summary = DispatchSummary()
        for envelope in envelopes:
            try:
                summary.merge(await self._dispatch_one(envelope))
            except Exception as e:
                summary.failed += 1
                logger.error("Dispatch of notification %d failed: %s", envelope.notification_id, e)
        if summary.sent or summary.failed or summary.dead_lettered:
            logger.info(
                "Dispatch finished: %d sent, %d failed, %d dead-lettered, %d skipped",
                summary.sent,
                summary.failed,
                summary.dead_lettered,
                summary.skipped,
            )
        return summary

    async def retry_pending(
        self,
        *,
        grace: timedelta = DEFAULT_RETRY_GRACE,
        limit: int = 100,
    ) -> DispatchSummary:
        """Re-drive notifications left PENDING/RETRYING (e.g. after a crash).

        Only notifications triggered more than ``grace`` ago are picked up,
        so deliveries still in flight elsewhere are left alone.
        """
        async with self._db.get_async_session() as session:
            repo = AlertNotificationRepository(session)
            pending = await repo.list_undelivered(triggered_before=self._clock() - grace, limit=limit)
            envelopes = []
            for notification in pending:
                envelope = await repo.get_envelope(notification.id)
                if envelope is not None:
                    envelopes.append(envelope)
        if envelopes:
            logger.info("Retrying %d undelivered notification(s)", len(envelopes))
        return await self.dispatch(envelopes)

    async def _dispatch_one(self, envelope: NotificationEnvelope) -> DispatchSummary:
        summary = DispatchSummary()
        transport = self._transports.get(envelope.channel)
        first_attempt_at: datetime | None = None

        while True:
            async with self._db.get_async_session() as session:
                notification = await AlertNotificationRepository(session).get(envelope.notification_id)
            if notification is None or notification.invalidated or notification.status in _TERMINAL:
                logger.debug("Notification %d no longer deliverable, skipping", envelope.notification_id)
                summary.skipped += 1
                return summary

            if transport is None:
                await self._fail(
                    envelope,
                    reason=DeadLetterReason.NO_TRANSPORT,
                    error=f"No transport registered for channel {envelope.channel.value}",
                    attempts=notification.attempt_count,
                    first_attempt_at=None,
                    count_attempt=False,
                )
                summary.failed += 1
                summary.dead_lettered += 1
                return summary

            if notification.attempt_count >= self._max_attempts:
                await self._fail(
                    envelope,
                    reason=DeadLetterReason.MAX_RETRIES_EXCEEDED,
                    error=notification.failure_reason,
                    attempts=notification.attempt_count,
                    first_attempt_at=first_attempt_at,
                    count_attempt=False,
                )
                summary.failed += 1
                summary.dead_lettered += 1
                return summary

            if self._dry_run:
                logger.info(
                    "[DRY RUN] Would send notification %d via %s: rule=%s, tx=%s",
                    envelope.notification_id,
                    envelope.channel.value,
                    envelope.rule_name,
                    envelope.tx_id,
                )
                summary.skipped += 1
                return summary

            now = self._clock()
            first_attempt_at = first_attempt_at or now
            result = await self._attempt(transport, envelope)
            attempts = notification.attempt_count + 1

            if result.status == DeliveryStatus.SUCCESS:
                async with self._db.get_async_session() as session:
                    await AlertNotificationRepository(session).mark_sent(envelope.notification_id, at=now)
                logger.info(
                    "Notification %d sent via %s (attempt %d)",
                    envelope.notification_id,
                    envelope.channel.value,
                    attempts,
                )
                summary.sent += 1
                return summary

            if result.status == DeliveryStatus.PERMANENT or attempts >= self._max_attempts:
                reason = (
                    DeadLetterReason.PERMANENT_FAILURE
                    if result.status == DeliveryStatus.PERMANENT
                    else DeadLetterReason.MAX_RETRIES_EXCEEDED
                )
                await self._fail(
                    envelope,
                    reason=reason,
                    error=result.error,
                    attempts=attempts,
                    first_attempt_at=first_attempt_at,
                    count_attempt=True,
                )
                summary.failed += 1
                summary.dead_lettered += 1
                return summary

            async with self._db.get_async_session() as session:
                await AlertNotificationRepository(session).record_failed_attempt(
                    envelope.notification_id,
                    at=now,
                    reason=result.error or "delivery failed",
                    terminal=False,
                )
            logger.warning(
                "Notification %d attempt %d/%d via %s failed: %s",
                envelope.notification_id,
                attempts,
                self._max_attempts,
                envelope.channel.value,
                result.error,
            )

    async def _attempt(self, transport: NotificationTransport, envelope: NotificationEnvelope) -> DeliveryResult:
        try:
            return await transport.deliver(envelope)
        except Exception as e:
            return DeliveryResult.retryable(f"{type(e).__name__}: {e}")

    async def _fail(
        self,
        envelope: NotificationEnvelope,
        *,
        reason: DeadLetterReason,
        error: str | None,
        attempts: int,
        first_attempt_at: datetime | None,
        count_attempt: bool,
    ) -> None:
        now = self._clock()
        async with self._db.get_async_session() as session:
            notifications = AlertNotificationRepository(session)
            if count_attempt:
                await notifications.record_failed_attempt(
                    envelope.notification_id,
                    at=now,
                    reason=error or reason.value,
                    terminal=True,
                )
            else:
                await notifications.mark_failed(envelope.notification_id, reason=error or reason.value)
            await DeadLetterRepository(session).insert(
                DeadLetterEntryDTO(
                    notification_id=envelope.notification_id,
                    alert_rule_id=envelope.rule_id,
                    alert_rule_name=envelope.rule_name,
                    channel=envelope.channel.value,
                    recipient=envelope.recipient or UNKNOWN_RECIPIENT,
                    failure_reason=reason.value,
                    error_message=error,
                    attempt_count=attempts,
                    first_attempt_at=first_attempt_at,
                    last_attempt_at=now if count_attempt else None,
                    queued_at=now,
                )
            )
        logger.error(
            "Notification %d dead-lettered (%s) after %d attempt(s): %s",
            envelope.notification_id,
            reason.value,
            attempts,
            error,
        )
