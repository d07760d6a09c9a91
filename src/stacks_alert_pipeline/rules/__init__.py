"""Alert rules - Criteria, rule index and matching."""

from stacks_alert_pipeline.rules.index import RuleIndex, RuleIndexProvider
from stacks_alert_pipeline.rules.models import (
    AlertRule,
    AlertRuleType,
    AlertSeverity,
    NotificationChannel,
    RuleSnapshot,
)

__all__ = [
    "AlertRule",
    "AlertRuleType",
    "AlertSeverity",
    "NotificationChannel",
    "RuleIndex",
    "RuleIndexProvider",
    "RuleSnapshot",
]
