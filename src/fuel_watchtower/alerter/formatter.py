"""Alert message formatter for multi-channel delivery.

Turns engine ``Alert`` objects into human-readable messages for logs,
pagers and webhooks.
"""

from __future__ import annotations

from typing import Literal

from fuel_watchtower.alerter.models import FormattedAlert
from fuel_watchtower.engine.models import Alert, AlertAction, AlertLevel

LEVEL_EMOJI = {
    AlertLevel.INFO: "ℹ️",
    AlertLevel.WARN: "⚠️",
    AlertLevel.ERROR: "🚨",
}

ACTION_DESCRIPTIONS = {
    AlertAction.PAUSE_STATE: "pausing the state contract",
    AlertAction.PAUSE_GATEWAY: "pausing the gateway contract",
    AlertAction.PAUSE_PORTAL: "pausing the portal contract",
    AlertAction.PAUSE_ALL: "pausing all bridge contracts",
}


def truncate_address(address: str, chars: int = 6) -> str:
    """Truncate a hex address or hash to 0x123456...abcdef format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


class AlertFormatter:
    """Formats engine alerts into delivery-ready messages.

    Supports two verbosity levels:
    - compact: title and description only
    - detailed: adds rule identity, action and triggering values
    """

    def __init__(
        self,
        verbosity: Literal["compact", "detailed"] = "detailed",
    ) -> None:
        self.verbosity = verbosity

    def format(self, alert: Alert) -> FormattedAlert:
        """Format an alert for every channel."""
        emoji = LEVEL_EMOJI.get(alert.level, "")
        title = f"{emoji} [{alert.level.label}] {alert.title}".strip()
        body = self._build_body(alert)

        return FormattedAlert(
            title=title,
            body=body,
            plain_text=f"{title}\n{body}",
            summary=f"{alert.title}: {alert.description}",
            level=alert.level,
            identity=alert.identity.key,
            action=alert.action,
            fired_at=alert.fired_at,
            values=dict(alert.detail.values),
        )

    def _build_body(self, alert: Alert) -> str:
        if self.verbosity == "compact":
            return alert.description

        lines = [
            alert.description,
            f"Chain: {alert.chain_side.value}",
            f"Rule: {alert.identity.key}",
            f"Fired at: {alert.fired_at.isoformat()}",
        ]
        if alert.action.is_pause:
            lines.append(f"Action: {ACTION_DESCRIPTIONS[alert.action]}")
        for key, value in alert.detail.values.items():
            if value.startswith("0x"):
                value = truncate_address(value)
            lines.append(f"{key}: {value}")
        return "\n".join(lines)
