"""Per chain side rule evaluation."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from fuel_watchtower.engine.models import Alert, RuleIdentity
from fuel_watchtower.engine.rules import RULE_HANDLERS, Rule, RuleState
from fuel_watchtower.engine.window import WindowAggregator
from fuel_watchtower.watcher.models import EVENT_TYPES, ChainSide, Event

logger = logging.getLogger(__name__)


class RuleEvaluationError(Exception):
    """Raised when a rule fails on an otherwise valid event."""

    def __init__(self, identity: RuleIdentity, cause: Exception) -> None:
        super().__init__(f"Rule {identity.key} failed: {cause}")
        self.identity = identity
        self.cause = cause


class RuleEvaluator:
    """Runs every rule of one chain side against that side's events.

    Rules never see each other's state. A rule that raises is logged and
    skipped; its siblings are still evaluated for the same event.

    Example:
        ```python
        window = WindowAggregator(config.window_time_frames())
        evaluator = RuleEvaluator(ChainSide.FUEL, build_rules(config), window)
        alerts = evaluator.evaluate(event)
        ```
    """

    def __init__(
        self,
        chain_side: ChainSide,
        rules: Iterable[Rule],
        window: WindowAggregator,
    ) -> None:
        self._chain_side = chain_side
        self._rules = [r for r in rules if r.chain_side is chain_side]
        self._window = window
        self._states: dict[RuleIdentity, RuleState] = {r.identity: RuleState() for r in self._rules}
        self._errors = 0
        self._dropped = 0

    @property
    def chain_side(self) -> ChainSide:
        return self._chain_side

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    @property
    def errors(self) -> int:
        """Number of rule evaluations that raised."""
        return self._errors

    @property
    def dropped(self) -> int:
        """Number of events rejected as unroutable."""
        return self._dropped

    def state_for(self, identity: RuleIdentity) -> RuleState:
        return self._states[identity]

    def evaluate(self, event: Event) -> list[Alert]:
        """Evaluate an event against every rule of this side.

        Returns:
            Raw alerts in rule order. Deduplication happens downstream.
        """
        if not isinstance(event, EVENT_TYPES):
            self._dropped += 1
            logger.warning("Dropping unknown event %r", event)
            return []
        if event.chain is not self._chain_side:
            self._dropped += 1
            logger.warning(
                "Dropping %s event for %s on the %s evaluator",
                type(event).__name__,
                event.chain.value,
                self._chain_side.value,
            )
            return []

        alerts: list[Alert] = []
        for rule in self._rules:
            handler = RULE_HANDLERS[rule.kind]
            try:
                alert = handler(rule, event, self._states[rule.identity], self._window)
            except Exception as e:
                self._errors += 1
                error = RuleEvaluationError(rule.identity, e)
                logger.error("%s (event=%s)", error, type(event).__name__)
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts
