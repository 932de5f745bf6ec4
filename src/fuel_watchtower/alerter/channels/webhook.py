"""Generic JSON webhook delivery."""

from __future__ import annotations

import logging

import aiohttp

from fuel_watchtower.alerter.models import FormattedAlert
from fuel_watchtower.engine.models import AlertLevel

logger = logging.getLogger(__name__)


class WebhookChannel:
    """POSTs every alert as JSON to a fixed URL."""

    name = "webhook"

    def __init__(self, url: str, *, min_level: AlertLevel = AlertLevel.INFO) -> None:
        self._url = url
        self._min_level = min_level
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def accepts(self, level: AlertLevel) -> bool:
        return level is not AlertLevel.NONE and level >= self._min_level

    async def send(self, alert: FormattedAlert) -> bool:
        session = self._get_session()
        try:
            async with session.post(self._url, json=alert.to_payload()) as resp:
                ok = resp.status < 400
                status = resp.status
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("Webhook error for %s: %s", alert.identity, e)
            return False

        if not ok:
            logger.warning("Webhook failed for %s: HTTP %d", alert.identity, status)
        return ok

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
