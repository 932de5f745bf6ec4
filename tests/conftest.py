"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from fuel_watchtower.config import WatchtowerConfig

STATE_ADDRESS = "0x" + "11" * 20
PORTAL_ADDRESS = "0x" + "22" * 20
GATEWAY_ADDRESS = "0x" + "33" * 20
TOKEN_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def base_time() -> datetime:
    """Fixed reference time for deterministic tests."""
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def config_data() -> dict[str, Any]:
    """A rule file exercising every rule kind."""
    return {
        "duplicate_alert_delay": 300,
        "fuel_client_watcher": {
            "connection_alert": {"alert_level": "Error"},
            "block_production_alert": {"alert_level": "Warn", "max_block_time": 10},
            "portal_withdraw_alerts": [
                {"alert_level": "Warn", "time_frame": 60, "amount": 10},
            ],
        },
        "ethereum_client_watcher": {
            "connection_alert": {"alert_level": "Error"},
            "block_production_alert": {"alert_level": "Warn", "max_block_time": 60},
            "account_funds_alert": {"alert_level": "Warn", "min_balance": "0.5"},
            "invalid_state_commit_alert": {"alert_level": "Error", "alert_action": "PauseAll"},
            "portal_deposit_alerts": [
                {"alert_level": "Info", "time_frame": 300, "amount": 1000},
            ],
            "gateway_withdraw_alerts": [
                {
                    "alert_level": "Error",
                    "token_name": "USDC",
                    "token_address": TOKEN_ADDRESS,
                    "token_decimals": 6,
                    "time_frame": 60,
                    "amount": 1000,
                },
                {
                    "alert_level": "Error",
                    "token_name": "USDC",
                    "token_address": TOKEN_ADDRESS,
                    "token_decimals": 6,
                    "time_frame": 300,
                    "amount": 25000,
                },
            ],
        },
    }


@pytest.fixture
def watchtower_config(config_data: dict[str, Any]) -> WatchtowerConfig:
    """Validated rule file built from ``config_data``."""
    return WatchtowerConfig.model_validate(config_data)
