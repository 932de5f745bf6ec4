"""Alerting layer - formatting and multi-channel notification."""

from fuel_watchtower.alerter.dispatcher import AlertChannel, AlertDispatcher, DispatchError
from fuel_watchtower.alerter.formatter import AlertFormatter
from fuel_watchtower.alerter.models import DispatchResult, FormattedAlert

__all__ = [
    "AlertChannel",
    "AlertDispatcher",
    "AlertFormatter",
    "DispatchError",
    "DispatchResult",
    "FormattedAlert",
]
