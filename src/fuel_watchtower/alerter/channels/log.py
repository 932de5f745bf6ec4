"""Alert channel that writes to the application log."""

from __future__ import annotations

import logging

from fuel_watchtower.alerter.models import FormattedAlert
from fuel_watchtower.engine.models import AlertLevel

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARN: logging.WARNING,
    AlertLevel.ERROR: logging.ERROR,
}


class LogChannel:
    """Logs every alert at the matching logging level."""

    name = "log"

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def accepts(self, level: AlertLevel) -> bool:
        return level is not AlertLevel.NONE

    async def send(self, alert: FormattedAlert) -> bool:
        self._log.log(_LOG_LEVELS.get(alert.level, logging.INFO), "%s | %s", alert.summary, alert.identity)
        return True

    async def close(self) -> None:
        return None
