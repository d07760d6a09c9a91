"""Generic JSON webhook channel."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from stacks_alert_pipeline.alerter.channels.http import DEFAULT_TIMEOUT_SECONDS, HttpPostTransport
from stacks_alert_pipeline.alerter.formatter import build_webhook_payload
from stacks_alert_pipeline.alerter.models import NotificationEnvelope
from stacks_alert_pipeline.rules.models import NotificationChannel


class WebhookTransport(HttpPostTransport):
    """Posts the notification as JSON to the rule's webhook URL."""

    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._clock = clock or (lambda: datetime.now(UTC))

    def build_body(self, envelope: NotificationEnvelope) -> dict[str, Any]:
        return build_webhook_payload(envelope, now=self._clock())
