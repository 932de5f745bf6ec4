"""Routing of admitted alerts to notification and pause collaborators."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from fuel_watchtower.actions.pauser import ActionError, PauseTarget
from fuel_watchtower.alerter.dispatcher import DispatchError
from fuel_watchtower.alerter.models import DispatchResult
from fuel_watchtower.engine.models import Alert, AlertAction, AlertDetail, AlertLevel

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, alert: Alert) -> DispatchResult: ...


class Pauser(Protocol):
    async def pause(self, target: PauseTarget) -> Any: ...

    async def pause_all(self) -> Any: ...


@dataclass
class ActionStats:
    """Counters for dispatched alerts."""

    notifications: int = 0
    notification_failures: int = 0
    pauses_requested: int = 0
    pause_failures: int = 0
    action_notices: int = 0


class ActionDispatcher:
    """Notifies about every admitted alert and runs its pause action.

    Notification and pause run concurrently. Neither failure propagates:
    delivery failures are logged as warnings, pause failures at CRITICAL.
    Nothing is retried.

    Pause progress is reported through the notifier as well: an Info notice
    when the pause starts and when it succeeds, an Error notice when it fails.

    Example:
        ```python
        actions = ActionDispatcher(alert_dispatcher, pauser)
        await actions.dispatch(alert)
        ```
    """

    def __init__(
        self,
        notifier: Notifier,
        pauser: Pauser | None = None,
        *,
        dry_run: bool = False,
    ) -> None:
        self._notifier = notifier
        self._pauser = pauser
        self._dry_run = dry_run
        self._stats = ActionStats()

    @property
    def stats(self) -> ActionStats:
        return self._stats

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def dispatch(self, alert: Alert) -> None:
        if self._dry_run:
            logger.info(
                "[DRY RUN] Would send alert: %s [%s] %s",
                alert.identity.key,
                alert.level.label,
                alert.title,
            )
            if alert.action.is_pause:
                logger.info("[DRY RUN] Would run action %s", alert.action.value)
            return

        steps: list[Awaitable[None]] = [self._notify(alert)]
        if alert.action.is_pause:
            steps.append(self._pause(alert))
        await asyncio.gather(*steps)

    async def _notify(self, alert: Alert) -> None:
        self._stats.notifications += 1
        try:
            result = await self._notifier.notify(alert)
        except DispatchError as e:
            self._stats.notification_failures += 1
            logger.warning("%s", e)
            return
        except Exception as e:
            self._stats.notification_failures += 1
            logger.error("Unexpected error notifying %s: %s", alert.identity.key, e)
            return

        if not result.all_succeeded:
            logger.warning(
                "Alert partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )

    async def _pause(self, alert: Alert) -> None:
        self._stats.pauses_requested += 1
        subject = _pause_subject(alert.action)
        try:
            started = self._announce(alert, AlertLevel.INFO, f"Pausing {subject}.", alert.title)
            _, result = await asyncio.gather(started, self._run_pause(alert))
        except ActionError as e:
            self._stats.pause_failures += 1
            logger.critical("Failed to perform action %s for %s: %s", alert.action.value, alert.identity.key, e)
            await self._announce(alert, AlertLevel.ERROR, f"Failed to pause {subject}", str(e))
            return
        except Exception as e:
            self._stats.pause_failures += 1
            logger.critical(
                "Unexpected error performing action %s for %s: %s",
                alert.action.value,
                alert.identity.key,
                e,
            )
            await self._announce(alert, AlertLevel.ERROR, f"Failed to pause {subject}", str(e))
            return

        await self._announce(
            alert,
            AlertLevel.INFO,
            f"Successfully paused {subject}.",
            alert.title,
            _transactions(result),
        )

    async def _run_pause(self, alert: Alert) -> Any:
        if self._pauser is None:
            raise ActionError("Ethereum account not configured.")
        if alert.action is AlertAction.PAUSE_ALL:
            return await self._pauser.pause_all()
        return await self._pauser.pause(PauseTarget.for_action(alert.action))

    async def _announce(
        self,
        alert: Alert,
        level: AlertLevel,
        title: str,
        description: str,
        values: Mapping[str, str] | None = None,
    ) -> None:
        """Report the progress of a pause through the notifier."""
        notice = Alert(
            identity=alert.identity,
            level=level,
            fired_at=datetime.now(UTC),
            detail=AlertDetail(title=title, description=description, values=dict(values or {})),
        )
        self._stats.action_notices += 1
        try:
            await self._notifier.notify(notice)
        except Exception as e:
            self._stats.notification_failures += 1
            logger.warning("Failed to report %r for %s: %s", title, alert.identity.key, e)


def _pause_subject(action: AlertAction) -> str:
    if action is AlertAction.PAUSE_ALL:
        return "all contracts"
    return f"{PauseTarget.for_action(action).value} contract"


def _transactions(result: Any) -> dict[str, str]:
    if isinstance(result, Mapping):
        return {str(getattr(k, "value", k)): str(v) for k, v in result.items()}
    if isinstance(result, str):
        return {"tx": result}
    return {}
