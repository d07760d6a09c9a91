"""Alert message formatting for multi-channel delivery.

Builds the stored plain-text message of a notification and the JSON
bodies posted by the webhook and Slack transports.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from stacks_alert_pipeline.alerter.models import NotificationEnvelope
from stacks_alert_pipeline.rules.models import AlertRule, AlertSeverity

EXPLORER_TX_URL = "https://explorer.hiro.so/txid/{tx_id}?chain=mainnet"

SEVERITY_EMOJI = {
    AlertSeverity.INFO: ":information_source:",
    AlertSeverity.WARNING: ":warning:",
    AlertSeverity.CRITICAL: ":rotating_light:",
}

# Slack attachment colors
SEVERITY_COLOR = {
    AlertSeverity.INFO: "#439FE0",
    AlertSeverity.WARNING: "#F2C744",
    AlertSeverity.CRITICAL: "#E01E5A",
}


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate a Stacks principal to SP12...ABCD format."""
    if len(address) < chars * 2 + 4:
        return address
    contract = ""
    if "." in address:
        address, contract_name = address.split(".", 1)
        contract = f".{contract_name}"
    if len(address) < chars * 2 + 4:
        return f"{address}{contract}"
    return f"{address[: chars + 2]}...{address[-chars:]}{contract}"


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def build_message(
    rule: AlertRule,
    *,
    trigger_description: str,
    tx_id: str,
    block_height: int,
    sender: str,
    success: bool,
    triggered_at: datetime,
) -> str:
    """Plain-text notification body stored with the notification."""
    lines = [
        f"Alert: {rule.name}",
        f"Severity: {rule.severity.value}",
        f"Trigger: {trigger_description}",
        "",
        f"Transaction: {tx_id}",
        f"Block Height: {block_height}",
        f"Sender: {sender}",
        f"Success: {success}",
        f"Triggered At: {_iso(triggered_at)}",
    ]
    return "\n".join(lines)


def build_webhook_payload(envelope: NotificationEnvelope, *, now: datetime | None = None) -> dict[str, Any]:
    """JSON body posted to generic webhooks."""
    event: dict[str, Any] | None = None
    if envelope.event_type is not None:
        event = {
            "event_type": envelope.event_type,
            "event_index": envelope.event_index,
            "contract_identifier": envelope.contract_identifier,
            "description": envelope.event_description,
        }
    return {
        "notification_id": envelope.notification_id,
        "triggered_at": _iso(envelope.triggered_at),
        "alert_rule_id": envelope.rule_id,
        "alert_rule_name": envelope.rule_name,
        "severity": envelope.severity.value,
        "transaction": {
            "tx_id": envelope.tx_id,
            "sender": envelope.sender,
            "success": envelope.success,
            "block_height": envelope.block_height,
        },
        "event": event,
        "message": envelope.message,
        "timestamp": _iso(now or datetime.now(UTC)),
    }


def build_slack_payload(envelope: NotificationEnvelope) -> dict[str, Any]:
    """Slack incoming-webhook body using Block Kit."""
    emoji = SEVERITY_EMOJI.get(envelope.severity, "")
    status = "success" if envelope.success else "failed"
    fields = [
        {"type": "mrkdwn", "text": f"*Severity:*\n{envelope.severity.value}"},
        {"type": "mrkdwn", "text": f"*Block:*\n{envelope.block_height}"},
        {"type": "mrkdwn", "text": f"*Sender:*\n`{truncate_address(envelope.sender)}`"},
        {"type": "mrkdwn", "text": f"*Status:*\n{status}"},
    ]
    tx_url = EXPLORER_TX_URL.format(tx_id=envelope.tx_id)
    return {
        "text": f"{envelope.rule_name}: {envelope.tx_id}",
        "attachments": [
            {
                "color": SEVERITY_COLOR.get(envelope.severity, "#CCCCCC"),
                "blocks": [
                    {
                        "type": "header",
                        "text": {"type": "plain_text", "text": f"{emoji} {envelope.rule_name}".strip()},
                    },
                    {"type": "section", "fields": fields},
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": f"```{envelope.message}```"},
                    },
                    {
                        "type": "context",
                        "elements": [{"type": "mrkdwn", "text": f"<{tx_url}|View transaction>"}],
                    },
                ],
            }
        ],
    }
