"""Sliding time-window sums for windowed amount rules."""

from __future__ import annotations

import bisect
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from fuel_watchtower.engine.models import RuleIdentity


class WindowError(Exception):
    """Raised when an observation cannot be applied to a window."""


@dataclass
class _WindowState:
    size: timedelta
    entries: list[tuple[datetime, Decimal]] = field(default_factory=list)
    total: Decimal = Decimal(0)
    right_edge: datetime | None = None


class WindowAggregator:
    """Per-identity trailing sums over a fixed time frame.

    The right edge of a window is the latest ``occurred_at`` observed for
    that identity, not the wall clock. Each observation evicts entries
    older than ``right_edge - time_frame`` and then records the sample, so
    the returned sum always includes the sample just observed.

    A sample that arrives older than the current left edge is counted in
    the sum returned for it and evicted by the next observation. Samples
    already evicted are never restored. This trades exactness for bounded
    memory under minor out-of-order delivery.

    All methods are synchronous; on a single event loop each call is
    atomic with respect to other coroutines.
    """

    def __init__(self, time_frames: Mapping[RuleIdentity, int]) -> None:
        """Initialize the aggregator.

        Args:
            time_frames: Window size in seconds for every windowed identity.
        """
        self._windows: dict[RuleIdentity, _WindowState] = {}
        for identity, seconds in time_frames.items():
            if seconds <= 0:
                raise WindowError(f"time_frame for {identity.key} must be > 0")
            self._windows[identity] = _WindowState(size=timedelta(seconds=seconds))

    @property
    def identities(self) -> list[RuleIdentity]:
        return list(self._windows)

    def _state(self, identity: RuleIdentity) -> _WindowState:
        state = self._windows.get(identity)
        if state is None:
            raise WindowError(f"No window registered for {identity.key}")
        return state

    def window_size(self, identity: RuleIdentity) -> timedelta:
        return self._state(identity).size

    def current_sum(self, identity: RuleIdentity) -> Decimal:
        return self._state(identity).total

    def observe(self, identity: RuleIdentity, occurred_at: datetime, amount: Decimal) -> Decimal:
        """Record a sample and return the window sum including it."""
        if occurred_at.tzinfo is None:
            raise WindowError("occurred_at must be timezone-aware")
        if amount < 0:
            raise WindowError(f"amount must be >= 0, got {amount}")

        state = self._state(identity)
        if state.right_edge is None or occurred_at > state.right_edge:
            state.right_edge = occurred_at

        cutoff = state.right_edge - state.size
        # (cutoff,) sorts before every (cutoff, amount) entry
        evict = bisect.bisect_left(state.entries, (cutoff,))
        if evict:
            for _, old_amount in state.entries[:evict]:
                state.total -= old_amount
            del state.entries[:evict]

        bisect.insort(state.entries, (occurred_at, amount))
        state.total += amount
        return state.total
