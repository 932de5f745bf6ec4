"""Polling loop shared by the chain watchers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from fuel_watchtower.watcher.models import ChainSide, Connectivity, Event, EventDecodeError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 6.0
# Emit a "still watching" line every N polls
DEFAULT_HEARTBEAT_EVERY = 50

EventSink = Callable[[Event], Awaitable[None]]


class WatcherError(Exception):
    """Raised when a watcher cannot reach its chain.

    ``events`` holds what the poll observed before it failed.
    """

    def __init__(self, message: str, events: list[Event] | None = None) -> None:
        super().__init__(message)
        self.events = list(events or [])


@dataclass
class WatcherStats:
    """Statistics for a watcher."""

    polls: int = 0
    events_emitted: int = 0
    failures: int = 0
    last_poll_at: datetime | None = None
    last_error: str | None = None


class ChainWatcher(ABC):
    """Polls one chain on a fixed cadence and pushes events to a sink.

    Subclasses implement ``poll()``, returning the events observed since the
    previous poll in chain order. A ``WatcherError`` from ``poll()`` is turned
    into a ``Connectivity(connected=False)`` event so connection rules see it,
    after the events it carries from the part of the poll that succeeded.
    Any other error is treated the same way and never ends the polling loop.
    """

    chain: ChainSide

    def __init__(
        self,
        *,
        sink: EventSink | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        heartbeat_every: int = DEFAULT_HEARTBEAT_EVERY,
    ) -> None:
        self._sink = sink
        self._poll_interval = poll_interval_seconds
        self._heartbeat_every = heartbeat_every
        self._stats = WatcherStats()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> WatcherStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind(self, sink: EventSink) -> None:
        """Set where observed events go."""
        self._sink = sink

    @abstractmethod
    async def poll(self) -> list[Event]:
        """Observe the chain once."""

    async def aclose(self) -> None:
        """Release client resources."""
        return None

    async def start(self) -> None:
        if self._sink is None:
            raise RuntimeError(f"{type(self).__name__} has no event sink")
        if self.is_running:
            raise RuntimeError(f"{type(self).__name__} is already running")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"{self.chain.value}-watcher")
        logger.info("Started %s watcher (every %.1fs)", self.chain.value, self._poll_interval)

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Stopped %s watcher", self.chain.value)

    async def poll_once(self) -> list[Event]:
        """Run one poll and deliver its events to the sink."""
        now = datetime.now(UTC)
        self._stats.polls += 1
        self._stats.last_poll_at = now
        try:
            events = await self.poll()
        except WatcherError as e:
            self._stats.failures += 1
            self._stats.last_error = str(e)
            logger.warning("%s watcher poll failed: %s", self.chain.value, e)
            events = [*e.events, Connectivity(chain=self.chain, connected=False, observed_at=now, error=str(e))]
        except EventDecodeError as e:
            self._stats.failures += 1
            self._stats.last_error = str(e)
            logger.warning("%s watcher dropped a malformed payload: %s", self.chain.value, e)
            events = []
        except Exception as e:
            self._stats.failures += 1
            self._stats.last_error = str(e)
            logger.exception("Unexpected error polling %s", self.chain.value)
            events = [Connectivity(chain=self.chain, connected=False, observed_at=now, error=str(e))]

        if self._sink is not None:
            for event in events:
                await self._sink(event)
                self._stats.events_emitted += 1
        return events

    async def _run(self) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            await self.poll_once()

            if self._heartbeat_every and self._stats.polls % self._heartbeat_every == 0:
                logger.info("Watching %s chain.", self.chain.value)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                break
            except TimeoutError:
                pass
