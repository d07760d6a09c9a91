"""Delivery transports, one per notification channel.

EMAIL has no transport; notifications on that channel are dead-lettered
with NO_TRANSPORT unless one is registered.
"""

from stacks_alert_pipeline.alerter.channels.http import HttpPostTransport, classify_status
from stacks_alert_pipeline.alerter.channels.slack import SlackTransport
from stacks_alert_pipeline.alerter.channels.webhook import WebhookTransport

__all__ = [
    "HttpPostTransport",
    "SlackTransport",
    "WebhookTransport",
    "classify_status",
]
