"""Alerting layer - Notification formatting, delivery and dead-lettering."""
