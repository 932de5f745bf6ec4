"""Tests for alert deduplication."""

from datetime import UTC, datetime, timedelta

import pytest

from fuel_watchtower.engine.dedup import Deduplicator
from fuel_watchtower.engine.models import Alert, AlertDetail, AlertLevel, RuleIdentity, RuleKind
from fuel_watchtower.watcher.models import ChainSide

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

CONNECTION = RuleIdentity(ChainSide.FUEL, RuleKind.CONNECTION)
BLOCKS = RuleIdentity(ChainSide.FUEL, RuleKind.BLOCK_PRODUCTION)


def create_alert(identity: RuleIdentity = CONNECTION, *, offset: float = 0) -> Alert:
    """Create an alert fired ``offset`` seconds after T0."""
    return Alert(
        identity=identity,
        level=AlertLevel.ERROR,
        fired_at=T0 + timedelta(seconds=offset),
        detail=AlertDetail(title="Failed to check fuel connection", description="timeout"),
    )


class TestAdmit:
    """Tests for Deduplicator.admit()."""

    def test_first_alert_admitted(self):
        """Test that an unseen identity is admitted."""
        dedup = Deduplicator(60)
        assert dedup.admit(create_alert()) is True
        assert dedup.admitted == 1
        assert dedup.last_fired_at(CONNECTION) == T0

    def test_repeat_within_delay_suppressed(self):
        """Test suppression inside the cool-down."""
        dedup = Deduplicator(60)
        dedup.admit(create_alert())

        assert dedup.admit(create_alert(offset=59)) is False
        assert dedup.suppressed == 1
        assert dedup.suppressed_for(CONNECTION) == 1
        assert dedup.last_fired_at(CONNECTION) == T0

    def test_exactly_delay_apart_admitted(self):
        """Test that the cool-down boundary is inclusive."""
        dedup = Deduplicator(60)
        dedup.admit(create_alert())
        assert dedup.admit(create_alert(offset=60)) is True
        assert dedup.admitted == 2

    def test_suppressed_alert_does_not_extend_cool_down(self):
        """Test that only admitted alerts move the reference time."""
        dedup = Deduplicator(60)
        dedup.admit(create_alert())
        dedup.admit(create_alert(offset=50))
        assert dedup.admit(create_alert(offset=61)) is True

    def test_identities_independent(self):
        """Test that each identity has its own cool-down."""
        dedup = Deduplicator(60)
        dedup.admit(create_alert(CONNECTION))
        assert dedup.admit(create_alert(BLOCKS, offset=1)) is True
        assert dedup.suppressed_for(BLOCKS) == 0

    def test_zero_delay_admits_everything(self):
        """Test that a zero delay disables deduplication."""
        dedup = Deduplicator(0)
        assert all(dedup.admit(create_alert()) for _ in range(3))

    def test_timedelta_delay(self):
        """Test that timedelta delays are accepted."""
        dedup = Deduplicator(timedelta(minutes=5))
        assert dedup.delay == timedelta(seconds=300)

    def test_negative_delay_rejected(self):
        """Test construction with a negative delay."""
        with pytest.raises(ValueError):
            Deduplicator(-1)
