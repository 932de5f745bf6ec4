"""Tests for the per chain side rule evaluator."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from fuel_watchtower.engine.evaluator import RuleEvaluationError, RuleEvaluator
from fuel_watchtower.engine.models import RuleIdentity, RuleKind
from fuel_watchtower.engine.rules import RULE_HANDLERS, build_rules
from fuel_watchtower.engine.window import WindowAggregator
from fuel_watchtower.watcher.models import (
    BlockProduced,
    ChainSide,
    CheckTick,
    Connectivity,
    ContractKind,
    Direction,
    StateCommit,
    ValueTransfer,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def window(watchtower_config) -> WindowAggregator:
    return WindowAggregator(watchtower_config.window_time_frames())


@pytest.fixture
def fuel_evaluator(watchtower_config, window) -> RuleEvaluator:
    return RuleEvaluator(ChainSide.FUEL, build_rules(watchtower_config), window)


@pytest.fixture
def eth_evaluator(watchtower_config, window) -> RuleEvaluator:
    return RuleEvaluator(ChainSide.ETHEREUM, build_rules(watchtower_config), window)


class TestRouting:
    """Tests for event routing."""

    def test_only_own_side_rules(self, fuel_evaluator):
        """Test that an evaluator keeps the rules of its side."""
        assert fuel_evaluator.rules
        assert all(rule.chain_side is ChainSide.FUEL for rule in fuel_evaluator.rules)

    def test_other_side_event_dropped(self, fuel_evaluator):
        """Test that events for the other chain are dropped and counted."""
        alerts = fuel_evaluator.evaluate(Connectivity(ChainSide.ETHEREUM, False, at(0)))
        assert alerts == []
        assert fuel_evaluator.dropped == 1

    def test_unknown_event_dropped(self, fuel_evaluator):
        """Test that foreign objects are dropped."""
        assert fuel_evaluator.evaluate({"type": "block"}) == []  # type: ignore[arg-type]
        assert fuel_evaluator.dropped == 1

    def test_state_commit_routes_to_ethereum(self, eth_evaluator):
        """Test that commits reach the Ethereum invalid commit rule."""
        alerts = eth_evaluator.evaluate(StateCommit(valid=False, commit_hash="0x01", observed_at=at(0)))
        assert [a.rule_kind for a in alerts] == [RuleKind.INVALID_STATE_COMMIT]


class TestEvaluate:
    """Tests for RuleEvaluator.evaluate()."""

    def test_disconnect_alert(self, fuel_evaluator):
        """Test a Fuel disconnect."""
        alerts = fuel_evaluator.evaluate(Connectivity(ChainSide.FUEL, False, at(0), error="refused"))
        assert len(alerts) == 1
        assert alerts[0].identity == RuleIdentity(ChainSide.FUEL, RuleKind.CONNECTION)

    def test_block_production_over_ticks(self, fuel_evaluator):
        """Test block production through the evaluator."""
        fuel_evaluator.evaluate(BlockProduced(ChainSide.FUEL, 100, at(0)))
        assert fuel_evaluator.evaluate(CheckTick(ChainSide.FUEL, at(5))) == []

        alerts = fuel_evaluator.evaluate(CheckTick(ChainSide.FUEL, at(10)))

        assert [a.rule_kind for a in alerts] == [RuleKind.BLOCK_PRODUCTION]
        state = fuel_evaluator.state_for(alerts[0].identity)
        assert state.last_block_height == 100

    def test_windowed_rule_fires(self, fuel_evaluator):
        """Test the Fuel portal withdraw window."""
        def withdraw(amount: str, seconds: float) -> ValueTransfer:
            return ValueTransfer(
                chain=ChainSide.FUEL,
                direction=Direction.WITHDRAW,
                contract=ContractKind.PORTAL,
                amount=Decimal(amount),
                occurred_at=at(seconds),
            )

        assert fuel_evaluator.evaluate(withdraw("6", 0)) == []
        alerts = fuel_evaluator.evaluate(withdraw("5", 30))
        assert [a.identity.time_frame for a in alerts] == [60]


class TestIsolation:
    """Tests for rule failure isolation."""

    def test_failing_rule_does_not_stop_siblings(self, fuel_evaluator, caplog):
        """Test that one broken rule is logged and skipped."""

        def explode(*args, **kwargs):
            raise ZeroDivisionError("boom")

        with patch.dict(RULE_HANDLERS, {RuleKind.BLOCK_PRODUCTION: explode}):
            alerts = fuel_evaluator.evaluate(Connectivity(ChainSide.FUEL, False, at(0)))

        assert [a.rule_kind for a in alerts] == [RuleKind.CONNECTION]
        assert fuel_evaluator.errors == 1
        assert "boom" in caplog.text

    def test_error_carries_identity(self):
        """Test the RuleEvaluationError message."""
        identity = RuleIdentity(ChainSide.FUEL, RuleKind.CONNECTION)
        error = RuleEvaluationError(identity, ValueError("bad"))
        assert error.identity is identity
        assert "fuel:connection" in str(error)
