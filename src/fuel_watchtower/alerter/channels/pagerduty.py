"""PagerDuty Events v2 delivery.

Only Error level alerts page someone; lower levels stay in the log.
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from fuel_watchtower.alerter.models import FormattedAlert
from fuel_watchtower.config import PAGERDUTY_EVENTS_URL
from fuel_watchtower.engine.models import AlertLevel

logger = logging.getLogger(__name__)

PAGERDUTY_SOURCE = "Watchtower System"
PAGERDUTY_SEVERITY = "critical"


class PagerDutyChannel:
    """Triggers a PagerDuty incident per Error alert."""

    name = "pagerduty"

    def __init__(self, routing_key: str, *, events_url: str = PAGERDUTY_EVENTS_URL) -> None:
        self._routing_key = routing_key
        self._events_url = events_url
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def accepts(self, level: AlertLevel) -> bool:
        return level is AlertLevel.ERROR

    def _build_payload(self, alert: FormattedAlert) -> dict[str, Any]:
        return {
            "payload": {
                "summary": alert.summary,
                "severity": PAGERDUTY_SEVERITY,
                "source": PAGERDUTY_SOURCE,
            },
            "routing_key": self._routing_key,
            "event_action": "trigger",
        }

    async def send(self, alert: FormattedAlert) -> bool:
        """POST the event. Returns True on a 2xx response."""
        session = self._get_session()
        try:
            async with session.post(self._events_url, json=self._build_payload(alert)) as resp:
                ok = 200 <= resp.status < 300
                status = resp.status
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("PagerDuty error for %s: %s", alert.identity, e)
            return False

        if not ok:
            logger.warning("PagerDuty rejected %s: HTTP %d", alert.identity, status)
        return ok

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
