"""Alert deduplication with a per-identity cool-down."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from fuel_watchtower.engine.models import Alert, RuleIdentity

logger = logging.getLogger(__name__)


class Deduplicator:
    """Admits an alert unless the same identity was admitted too recently.

    The cool-down is measured on ``fired_at`` (event time), not on the
    wall clock. An alert exactly ``duplicate_alert_delay`` after the last
    admitted one is admitted. Suppression is silent apart from counters.
    """

    def __init__(self, duplicate_alert_delay: int | float | timedelta) -> None:
        if not isinstance(duplicate_alert_delay, timedelta):
            duplicate_alert_delay = timedelta(seconds=duplicate_alert_delay)
        if duplicate_alert_delay < timedelta(0):
            raise ValueError("duplicate_alert_delay must be >= 0")
        self._delay = duplicate_alert_delay
        self._last_fired: dict[RuleIdentity, datetime] = {}
        self._suppressed_by_identity: Counter[RuleIdentity] = Counter()
        self._admitted = 0
        self._suppressed = 0

    @property
    def delay(self) -> timedelta:
        return self._delay

    @property
    def admitted(self) -> int:
        return self._admitted

    @property
    def suppressed(self) -> int:
        return self._suppressed

    def suppressed_for(self, identity: RuleIdentity) -> int:
        return self._suppressed_by_identity[identity]

    def last_fired_at(self, identity: RuleIdentity) -> datetime | None:
        return self._last_fired.get(identity)

    def admit(self, alert: Alert) -> bool:
        """Return True and record the alert if it is outside the cool-down."""
        last = self._last_fired.get(alert.identity)
        if last is not None and alert.fired_at - last < self._delay:
            self._suppressed += 1
            self._suppressed_by_identity[alert.identity] += 1
            logger.debug(
                "Suppressed duplicate alert %s (%.1fs since last)",
                alert.identity.key,
                (alert.fired_at - last).total_seconds(),
            )
            return False

        self._last_fired[alert.identity] = alert.fired_at
        self._admitted += 1
        return True
