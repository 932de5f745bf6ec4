"""Notification channels."""

from fuel_watchtower.alerter.channels.log import LogChannel
from fuel_watchtower.alerter.channels.pagerduty import PagerDutyChannel
from fuel_watchtower.alerter.channels.webhook import WebhookChannel

__all__ = ["LogChannel", "PagerDutyChannel", "WebhookChannel"]
