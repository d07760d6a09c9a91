"""Slack incoming-webhook channel."""

from __future__ import annotations

from typing import Any

from stacks_alert_pipeline.alerter.channels.http import HttpPostTransport
from stacks_alert_pipeline.alerter.formatter import build_slack_payload
from stacks_alert_pipeline.alerter.models import NotificationEnvelope
from stacks_alert_pipeline.rules.models import NotificationChannel


class SlackTransport(HttpPostTransport):
    channel = NotificationChannel.SLACK

    def build_body(self, envelope: NotificationEnvelope) -> dict[str, Any]:
        return build_slack_payload(envelope)
