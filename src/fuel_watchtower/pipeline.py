"""Main orchestrator for the Fuel watchtower.

This module provides the Watchtower class that wires the chain watchers,
the alert engine and the action dispatcher together and manages the event
flow from observation to alerting.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fuel_watchtower.actions.dispatcher import ActionDispatcher, Notifier, Pauser
from fuel_watchtower.actions.pauser import EthereumPauser
from fuel_watchtower.alerter.channels import LogChannel, PagerDutyChannel, WebhookChannel
from fuel_watchtower.alerter.dispatcher import AlertChannel, AlertDispatcher
from fuel_watchtower.config import (
    ChainEndpoints,
    Settings,
    WatchtowerConfig,
    get_settings,
    resolve_endpoints,
)
from fuel_watchtower.engine.dedup import Deduplicator
from fuel_watchtower.engine.evaluator import RuleEvaluator
from fuel_watchtower.engine.models import Alert
from fuel_watchtower.engine.rules import Rule, build_rules
from fuel_watchtower.engine.window import WindowAggregator
from fuel_watchtower.watcher.base import ChainWatcher, EventSink
from fuel_watchtower.watcher.ethereum import EthereumClient, EthereumWatcher
from fuel_watchtower.watcher.fuel import FuelClient, FuelWatcher
from fuel_watchtower.watcher.models import EVENT_TYPES, ChainSide, CheckTick, Event

logger = logging.getLogger(__name__)


class WatchtowerState(str, Enum):
    """Watchtower lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WatchtowerStats:
    """Statistics for the watchtower."""

    started_at: datetime | None = None
    events_processed: int = 0
    events_dropped: int = 0
    alerts_raised: int = 0
    alerts_suppressed: int = 0
    alerts_dispatched: int = 0
    rule_errors: int = 0
    last_error: str | None = None


class Watchtower:
    """Runs both chain watchers through the alert engine.

    Flow per chain side:
        ChainWatcher → queue → RuleEvaluator → Deduplicator → ActionDispatcher

    Each side has its own queue and a single consumer, so events of one side
    are evaluated in arrival order. Window and dedup state are only touched
    from synchronous code and need no lock.

    Example:
        ```python
        from fuel_watchtower.config import get_settings, load_config
        from fuel_watchtower.pipeline import Watchtower

        settings = get_settings()
        watchtower = Watchtower(load_config(settings.config_path), settings)

        await watchtower.start()
        # Watchtower runs until stop() is called
        await watchtower.stop()
        ```
    """

    def __init__(
        self,
        config: WatchtowerConfig,
        settings: Settings | None = None,
        *,
        fuel_watcher: ChainWatcher | None = None,
        ethereum_watcher: ChainWatcher | None = None,
        notifier: Notifier | None = None,
        pauser: Pauser | None = None,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the watchtower.

        Args:
            config: Validated rule file.
            settings: Application settings. If not provided, uses get_settings().
            fuel_watcher: Fuel watcher to use instead of building one.
            ethereum_watcher: Ethereum watcher to use instead of building one.
            notifier: Notification collaborator to use instead of the channels.
            pauser: Pause collaborator to use instead of building one.
            dry_run: If True, log alerts instead of acting. Overrides settings.dry_run.
        """
        self._config = config
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = WatchtowerState.STOPPED
        self._stats = WatchtowerStats()

        # Engine, no I/O
        self._rules: list[Rule] = build_rules(config)
        self._window = WindowAggregator(config.window_time_frames())
        self._dedup = Deduplicator(config.duplicate_alert_delay)
        self._evaluators = {side: RuleEvaluator(side, self._rules, self._window) for side in ChainSide}
        self._queues: dict[ChainSide, asyncio.Queue[Event | None]] = {side: asyncio.Queue() for side in ChainSide}

        # Collaborators (built in start() unless injected)
        self._watchers: dict[ChainSide, ChainWatcher | None] = {
            ChainSide.FUEL: fuel_watcher,
            ChainSide.ETHEREUM: ethereum_watcher,
        }
        self._notifier = notifier
        self._pauser = pauser
        self._actions: ActionDispatcher | None = None
        if notifier is not None:
            self._actions = ActionDispatcher(notifier, pauser, dry_run=self._dry_run)
        self._endpoints: ChainEndpoints | None = None
        self._owned_watchers: list[ChainWatcher] = []
        self._owned_dispatcher: AlertDispatcher | None = None
        self._owned_eth_client: EthereumClient | None = None
        self._owned_pauser: EthereumPauser | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._consumer_tasks: dict[ChainSide, asyncio.Task[None]] = {}
        self._ticker_tasks: dict[ChainSide, asyncio.Task[None]] = {}

    @property
    def state(self) -> WatchtowerState:
        """Current lifecycle state."""
        return self._state

    @property
    def stats(self) -> WatchtowerStats:
        """Current statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == WatchtowerState.RUNNING

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    @property
    def window(self) -> WindowAggregator:
        return self._window

    @property
    def deduplicator(self) -> Deduplicator:
        return self._dedup

    @property
    def actions(self) -> ActionDispatcher | None:
        return self._actions

    def evaluator_for(self, side: ChainSide) -> RuleEvaluator:
        return self._evaluators[side]

    async def start(self) -> None:
        """Start the watchtower.

        Raises:
            RuntimeError: If the watchtower is not stopped.
            ConfigError: If endpoints needed to build a collaborator are missing.
        """
        if self._state != WatchtowerState.STOPPED:
            raise RuntimeError(f"Cannot start watchtower in state {self._state}")

        self._state = WatchtowerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting watchtower with %d rules...", len(self._rules))

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = WatchtowerState.RUNNING
            logger.info("Watchtower started successfully")
        except Exception as e:
            self._state = WatchtowerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start watchtower: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the watchtower gracefully.

        Watchers and tickers stop first, then each consumer drains what is
        already queued. Window contents are discarded.
        """
        if self._state in (WatchtowerState.STOPPED, WatchtowerState.STOPPING):
            return

        self._state = WatchtowerState.STOPPING
        logger.info("Stopping watchtower...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = WatchtowerState.STOPPED
        logger.info("Watchtower stopped")

    def request_stop(self) -> None:
        """Make run() return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    def _get_endpoints(self) -> ChainEndpoints:
        if self._endpoints is None:
            self._endpoints = resolve_endpoints(self._settings, self._config)
        return self._endpoints

    def _backfill_seconds(self, side: ChainSide) -> int:
        return max(
            (r.time_frame for r in self._rules if r.chain_side is side and r.time_frame),
            default=0,
        )

    def _token_decimals(self) -> dict[str, int]:
        watcher = self._config.ethereum_client_watcher
        return {
            rule.token_address: rule.token_decimals
            for rule in (*watcher.gateway_deposit_alerts, *watcher.gateway_withdraw_alerts)
        }

    async def _initialize_components(self) -> None:
        """Build every collaborator that was not injected."""
        settings = self._settings

        if self._watchers[ChainSide.FUEL] is None:
            endpoints = self._get_endpoints()
            fuel_watcher = FuelWatcher(
                FuelClient(endpoints.fuel_graphql_url),
                backfill_seconds=self._backfill_seconds(ChainSide.FUEL),
                poll_interval_seconds=settings.fuel.poll_interval_seconds,
            )
            self._watchers[ChainSide.FUEL] = fuel_watcher
            self._owned_watchers.append(fuel_watcher)

        built_pauser: EthereumPauser | None = None
        if self._watchers[ChainSide.ETHEREUM] is None or self._pauser is None:
            endpoints = self._get_endpoints()
            self._owned_eth_client = EthereumClient(
                endpoints.ethereum_rpc_url,
                fallback_rpc_url=endpoints.ethereum_fallback_rpc_url,
                max_retries=settings.ethereum.max_retries,
            )

            if self._pauser is None:
                built_pauser = EthereumPauser(
                    self._owned_eth_client.web3,
                    private_key=endpoints.private_key,
                    state_address=endpoints.state_contract_address,
                    portal_address=endpoints.portal_contract_address,
                    gateway_address=endpoints.gateway_contract_address,
                )
                self._pauser = self._owned_pauser = built_pauser
                if built_pauser.read_only:
                    logger.warning("Pause actions disabled: running in read-only mode")

        if self._watchers[ChainSide.ETHEREUM] is None:
            endpoints = self._get_endpoints()
            fuel_watcher = self._watchers[ChainSide.FUEL]
            commit_verifier = None
            if isinstance(fuel_watcher, FuelWatcher):
                commit_verifier = fuel_watcher.client.block_exists
            account = endpoints.account_address or (built_pauser.address if built_pauser else None)
            if self._owned_eth_client is None:
                raise RuntimeError("Ethereum client was not initialized")
            eth_watcher = EthereumWatcher(
                self._owned_eth_client,
                portal_address=endpoints.portal_contract_address,
                gateway_address=endpoints.gateway_contract_address,
                state_address=endpoints.state_contract_address,
                account_address=account,
                commit_verifier=commit_verifier,
                token_decimals=self._token_decimals(),
                backfill_seconds=self._backfill_seconds(ChainSide.ETHEREUM),
                poll_interval_seconds=settings.ethereum.poll_interval_seconds,
            )
            self._watchers[ChainSide.ETHEREUM] = eth_watcher
            self._owned_watchers.append(eth_watcher)

        if self._notifier is None:
            self._owned_dispatcher = AlertDispatcher(self._build_alert_channels())
            self._notifier = self._owned_dispatcher

        # Rebuilt so a pauser built above is wired in
        self._actions = ActionDispatcher(self._notifier, self._pauser, dry_run=self._dry_run)

        for side, watcher in self._watchers.items():
            if watcher is not None:
                watcher.bind(self._sink_for(side))

        logger.info("All components initialized")

    def _build_alert_channels(self) -> list[AlertChannel]:
        """Build list of enabled alert channels."""
        settings = self._settings
        channels: list[AlertChannel] = [LogChannel()]

        if settings.pagerduty.enabled and settings.pagerduty.api_key:
            channels.append(
                PagerDutyChannel(
                    settings.pagerduty.api_key.get_secret_value(),
                    events_url=settings.pagerduty.events_url,
                )
            )
            logger.info("PagerDuty channel enabled")

        if settings.webhook.enabled and settings.webhook.url:
            channels.append(WebhookChannel(settings.webhook.url.get_secret_value()))
            logger.info("Webhook channel enabled")

        if len(channels) == 1:
            logger.warning("No alert channels configured; alerts go to the log only")

        return channels

    def _sink_for(self, side: ChainSide) -> EventSink:
        async def sink(event: Event) -> None:
            if event.chain is not side:
                logger.warning("%s watcher produced a %s event", side.value, event.chain.value)
            await self.submit(event)

        return sink

    async def _start_background_services(self) -> None:
        """Start consumers first so nothing waits on a full pipeline."""
        for side in ChainSide:
            logger.debug("Starting %s consumer...", side.value)
            self._consumer_tasks[side] = asyncio.create_task(self._consume(side), name=f"{side.value}-consumer")

        for side, watcher in self._watchers.items():
            if watcher is not None:
                await watcher.start()

        for side in ChainSide:
            logger.debug("Starting %s ticker...", side.value)
            self._ticker_tasks[side] = asyncio.create_task(self._run_ticker(side), name=f"{side.value}-ticker")

    async def _stop_background_services(self) -> None:
        for watcher in self._watchers.values():
            if watcher is not None and watcher.is_running:
                await watcher.stop()

        for task in self._ticker_tasks.values():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ticker_tasks.clear()

        # The sentinel queues behind pending events, so consumers finish them first
        for side, task in self._consumer_tasks.items():
            await self._queues[side].put(None)
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._consumer_tasks.clear()

    async def _cleanup(self) -> None:
        """Close the collaborators this watchtower built."""
        for watcher in self._owned_watchers:
            try:
                await watcher.aclose()
            except Exception as e:
                logger.warning("Failed to close %s watcher: %s", watcher.chain.value, e)
        if self._owned_eth_client is not None and not any(
            isinstance(w, EthereumWatcher) for w in self._owned_watchers
        ):
            await self._owned_eth_client.aclose()
        if self._owned_dispatcher is not None:
            await self._owned_dispatcher.close()

        # Forget built collaborators so a later start() builds fresh ones
        for side, watcher in list(self._watchers.items()):
            if watcher in self._owned_watchers:
                self._watchers[side] = None
        if self._owned_dispatcher is not None and self._notifier is self._owned_dispatcher:
            self._notifier = None
            self._actions = None
        if self._owned_pauser is not None and self._pauser is self._owned_pauser:
            self._pauser = None
            self._actions = None
        self._owned_watchers.clear()
        self._owned_dispatcher = None
        self._owned_eth_client = None
        self._owned_pauser = None
        self._endpoints = None
        logger.debug("Resources cleaned up")

    async def _run_ticker(self, side: ChainSide) -> None:
        """Feed time-based rules with periodic check events."""
        if not self._stop_event:
            return
        interval = self._settings.tick_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            await self._queues[side].put(CheckTick(chain=side, observed_at=datetime.now(UTC)))

    async def _consume(self, side: ChainSide) -> None:
        queue = self._queues[side]
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await self.process_event(event)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.exception("Error processing %s event: %s", side.value, e)
            finally:
                queue.task_done()

    async def submit(self, event: Event) -> None:
        """Queue an event for its chain side's consumer."""
        if not isinstance(event, EVENT_TYPES):
            self._stats.events_dropped += 1
            logger.warning("Dropping unknown event %r", event)
            return
        await self._queues[event.chain].put(event)

    async def process_event(self, event: Event) -> list[Alert]:
        """Evaluate one event, deduplicate and dispatch what fires.

        Returns:
            Alerts admitted by the deduplicator.

        Raises:
            RuntimeError: If no action dispatcher is available yet.
        """
        if self._actions is None:
            raise RuntimeError("Watchtower has no notifier; inject one or call start()")

        if not isinstance(event, EVENT_TYPES):
            self._stats.events_dropped += 1
            logger.warning("Dropping unknown event %r", event)
            return []

        evaluator = self._evaluators[event.chain]
        errors_before = evaluator.errors
        alerts = evaluator.evaluate(event)
        self._stats.rule_errors += evaluator.errors - errors_before
        self._stats.events_processed += 1

        admitted: list[Alert] = []
        for alert in alerts:
            self._stats.alerts_raised += 1
            if not self._dedup.admit(alert):
                self._stats.alerts_suppressed += 1
                continue
            admitted.append(alert)

        for alert in admitted:
            await self._actions.dispatch(alert)
            self._stats.alerts_dispatched += 1

        return admitted

    async def run(self) -> None:
        """Start the watchtower and run until stopped.

        Example:
            ```python
            watchtower = Watchtower(config)
            try:
                await watchtower.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Watchtower:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
