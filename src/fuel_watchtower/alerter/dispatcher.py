"""Fan-out of formatted alerts to notification channels."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from fuel_watchtower.alerter.formatter import AlertFormatter
from fuel_watchtower.alerter.models import DispatchResult, FormattedAlert
from fuel_watchtower.engine.models import Alert, AlertLevel

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Raised when an alert could not be delivered to any channel."""


class AlertChannel(Protocol):
    """A notification destination."""

    name: str

    def accepts(self, level: AlertLevel) -> bool:
        """Whether alerts of this level go to the channel."""
        ...

    async def send(self, alert: FormattedAlert) -> bool:
        """Deliver an alert. Returns True on success."""
        ...

    async def close(self) -> None: ...


class AlertDispatcher:
    """Sends alerts to every channel that accepts their level, concurrently.

    Example:
        ```python
        dispatcher = AlertDispatcher([LogChannel(), WebhookChannel(url)])
        result = await dispatcher.notify(alert)
        ```
    """

    def __init__(
        self,
        channels: Sequence[AlertChannel],
        *,
        formatter: AlertFormatter | None = None,
    ) -> None:
        self._channels = list(channels)
        self._formatter = formatter or AlertFormatter()

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    async def dispatch(self, alert: FormattedAlert) -> DispatchResult:
        """Send a formatted alert to all eligible channels."""
        targets = [c for c in self._channels if c.accepts(alert.level)]
        if not targets:
            return DispatchResult()

        outcomes = await asyncio.gather(
            *(channel.send(alert) for channel in targets),
            return_exceptions=True,
        )

        results: dict[str, bool] = {}
        for channel, outcome in zip(targets, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Channel %s raised while sending %s: %s", channel.name, alert.identity, outcome)
                results[channel.name] = False
            else:
                results[channel.name] = bool(outcome)
        return DispatchResult(channel_results=results)

    async def notify(self, alert: Alert) -> DispatchResult:
        """Format and send an engine alert.

        Raises:
            DispatchError: If every eligible channel failed.
        """
        formatted = self._formatter.format(alert)
        result = await self.dispatch(formatted)
        if result.failure_count and not result.success_count:
            raise DispatchError(
                f"Alert {alert.identity.key} failed on all channels: {', '.join(result.failed_channels)}"
            )
        return result

    async def close(self) -> None:
        for channel in self._channels:
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Failed to close channel %s: %s", channel.name, e)
