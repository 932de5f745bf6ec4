"""Data models for alert delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fuel_watchtower.engine.models import AlertAction, AlertLevel


@dataclass(frozen=True)
class FormattedAlert:
    """An alert rendered for delivery.

    Attributes:
        title: Short headline.
        body: Multi-line description.
        plain_text: Title and body as one message.
        summary: One-line form for pagers.
        level: Severity of the source alert.
        identity: Key of the rule that fired.
        action: Action attached to the source alert.
        fired_at: When the rule fired.
        values: Values that tripped the rule.
    """

    title: str
    body: str
    plain_text: str
    summary: str
    level: AlertLevel
    identity: str
    action: AlertAction
    fired_at: datetime
    values: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready form used by webhook delivery."""
        return {
            "event": "watchtower_alert",
            "title": self.title,
            "body": self.body,
            "level": self.level.label,
            "identity": self.identity,
            "action": self.action.value,
            "fired_at": self.fired_at.isoformat(),
            "values": dict(self.values),
        }


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of sending one alert to every eligible channel."""

    channel_results: dict[str, bool] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return sum(1 for ok in self.channel_results.values() if ok)

    @property
    def failure_count(self) -> int:
        return sum(1 for ok in self.channel_results.values() if not ok)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0

    @property
    def failed_channels(self) -> list[str]:
        return [name for name, ok in self.channel_results.items() if not ok]
