"""Tests for the sliding window aggregator."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from fuel_watchtower.engine.models import RuleIdentity, RuleKind
from fuel_watchtower.engine.window import WindowAggregator, WindowError
from fuel_watchtower.watcher.models import ChainSide

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

PORTAL_60 = RuleIdentity(ChainSide.ETHEREUM, RuleKind.PORTAL_DEPOSIT, time_frame=60)
PORTAL_300 = RuleIdentity(ChainSide.FUEL, RuleKind.PORTAL_WITHDRAW, time_frame=300)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def window() -> WindowAggregator:
    return WindowAggregator({PORTAL_60: 60, PORTAL_300: 300})


class TestObserve:
    """Tests for WindowAggregator.observe()."""

    def test_first_observation_returns_amount(self, window):
        """Test that a fresh window sums to the first sample."""
        assert window.observe(PORTAL_60, at(0), Decimal(6)) == Decimal(6)

    def test_sum_within_window(self, window):
        """Test accumulation inside the time frame."""
        window.observe(PORTAL_60, at(0), Decimal(6))
        assert window.observe(PORTAL_60, at(30), Decimal(5)) == Decimal(11)

    def test_old_entries_evicted(self, window):
        """Test that samples older than the time frame leave the sum."""
        window.observe(PORTAL_60, at(0), Decimal(6))
        window.observe(PORTAL_60, at(30), Decimal(5))
        assert window.observe(PORTAL_60, at(70), Decimal(100)) == Decimal(105)
        assert window.current_sum(PORTAL_60) == Decimal(105)

    def test_entry_on_left_edge_is_kept(self, window):
        """Test that a sample exactly time_frame old still counts."""
        window.observe(PORTAL_60, at(0), Decimal(1))
        assert window.observe(PORTAL_60, at(60), Decimal(2)) == Decimal(3)

    def test_right_edge_is_event_time(self, window):
        """Test that the wall clock plays no part in eviction."""
        long_ago = datetime(2001, 1, 1, tzinfo=UTC)
        window.observe(PORTAL_60, long_ago, Decimal(4))
        assert window.observe(PORTAL_60, long_ago + timedelta(seconds=10), Decimal(4)) == Decimal(8)

    def test_late_sample_counted_then_evicted(self, window):
        """Test the documented handling of samples older than the left edge."""
        window.observe(PORTAL_60, at(100), Decimal(1))
        assert window.observe(PORTAL_60, at(10), Decimal(50)) == Decimal(51)
        assert window.observe(PORTAL_60, at(101), Decimal(1)) == Decimal(2)

    def test_identities_are_independent(self, window):
        """Test that windows never share samples."""
        window.observe(PORTAL_60, at(0), Decimal(6))
        assert window.observe(PORTAL_300, at(0), Decimal(1)) == Decimal(1)
        assert window.current_sum(PORTAL_60) == Decimal(6)


class TestErrors:
    """Tests for rejected observations."""

    def test_unregistered_identity(self, window):
        """Test observing an identity without a window."""
        other = RuleIdentity(ChainSide.ETHEREUM, RuleKind.PORTAL_WITHDRAW, time_frame=60)
        with pytest.raises(WindowError):
            window.observe(other, at(0), Decimal(1))

    def test_negative_amount(self, window):
        """Test that negative amounts are rejected."""
        with pytest.raises(WindowError):
            window.observe(PORTAL_60, at(0), Decimal(-1))

    def test_naive_datetime(self, window):
        """Test that naive timestamps are rejected."""
        with pytest.raises(WindowError):
            window.observe(PORTAL_60, datetime(2024, 5, 1), Decimal(1))

    def test_non_positive_time_frame(self):
        """Test construction with an invalid window size."""
        with pytest.raises(WindowError):
            WindowAggregator({PORTAL_60: 0})

    def test_window_size(self, window):
        """Test the window size accessor."""
        assert window.window_size(PORTAL_300) == timedelta(seconds=300)
        assert set(window.identities) == {PORTAL_60, PORTAL_300}
