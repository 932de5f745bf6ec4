"""Tests for rule file loading and environment settings."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from fuel_watchtower.config import (
    PRIVATE_KEY_ENV_VAR,
    ConfigError,
    Settings,
    WatchtowerConfig,
    clear_settings_cache,
    get_settings,
    load_config,
    resolve_endpoints,
    rule_identity,
)
from fuel_watchtower.engine.models import AlertAction, AlertLevel, RuleIdentity, RuleKind
from fuel_watchtower.watcher.models import NATIVE_TOKEN_ADDRESS, ChainSide

TOKEN_ADDRESS = "0x" + "ab" * 20

_ENV_VARS = (
    "WATCHTOWER_CONFIG",
    "FUEL_GRAPHQL_URL",
    "FUEL_POLL_INTERVAL_SECONDS",
    "ETHEREUM_RPC_URL",
    "ETHEREUM_FALLBACK_RPC_URL",
    "ETHEREUM_POLL_INTERVAL_SECONDS",
    "ETHEREUM_ACCOUNT_ADDRESS",
    "STATE_CONTRACT_ADDRESS",
    "PORTAL_CONTRACT_ADDRESS",
    "GATEWAY_CONTRACT_ADDRESS",
    PRIVATE_KEY_ENV_VAR,
    "PAGERDUTY_API_KEY",
    "WEBHOOK_URL",
    "TICK_INTERVAL_SECONDS",
    "LOG_LEVEL",
    "DRY_RUN",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Isolate settings from the host environment and any local .env file."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


def write_config(tmp_path: Path, data: dict[str, Any] | str) -> Path:
    """Write a rule file and return its path."""
    path = tmp_path / "watchtower_config.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return path


class TestRuleFileDefaults:
    """Tests for defaults of the rule file."""

    def test_minimal_file(self):
        """Test that only duplicate_alert_delay is required."""
        config = WatchtowerConfig.model_validate({"duplicate_alert_delay": 60})

        eth = config.ethereum_client_watcher
        assert config.duplicate_alert_delay == 60
        assert eth.connection_alert.alert_level is AlertLevel.NONE
        assert eth.block_production_alert.max_block_time == 60
        assert eth.account_funds_alert.min_balance == Decimal("0.1")
        assert eth.invalid_state_commit_alert.alert_action is AlertAction.NONE
        assert eth.portal_deposit_alerts == ()
        assert list(config.iter_rules()) == []

    def test_transfer_rule_defaults(self):
        """Test defaults of a transfer rule."""
        config = WatchtowerConfig.model_validate(
            {
                "duplicate_alert_delay": 0,
                "ethereum_client_watcher": {"gateway_deposit_alerts": [{"alert_level": "Info"}]},
            }
        )
        rule = config.ethereum_client_watcher.gateway_deposit_alerts[0]
        assert rule.token_name == "ETH"
        assert rule.token_address == NATIVE_TOKEN_ADDRESS
        assert rule.time_frame == 300
        assert rule.amount == Decimal(1000)

    def test_fuel_transfer_rules_use_nine_decimals(self):
        """Test that Fuel-side transfer rules default to 9 decimals."""
        config = WatchtowerConfig.model_validate(
            {
                "duplicate_alert_delay": 0,
                "fuel_client_watcher": {"portal_withdraw_alerts": [{"alert_level": "Info"}]},
            }
        )
        assert config.fuel_client_watcher.portal_withdraw_alerts[0].token_decimals == 9

    def test_missing_delay_rejected(self):
        """Test that duplicate_alert_delay is required."""
        with pytest.raises(ValidationError):
            WatchtowerConfig.model_validate({})

    def test_negative_delay_rejected(self):
        """Test that a negative cool-down is rejected."""
        with pytest.raises(ValidationError):
            WatchtowerConfig.model_validate({"duplicate_alert_delay": -1})


class TestRuleFileValidation:
    """Tests for rule file validation."""

    @pytest.mark.parametrize("level", ["Warn", "warn", "WARNING", "Warning"])
    def test_level_names_are_case_insensitive(self, level):
        """Test alert level parsing."""
        config = WatchtowerConfig.model_validate(
            {
                "duplicate_alert_delay": 0,
                "fuel_client_watcher": {"connection_alert": {"alert_level": level}},
            }
        )
        assert config.fuel_client_watcher.connection_alert.alert_level is AlertLevel.WARN

    def test_unknown_level_rejected(self):
        """Test that an unknown level fails validation."""
        with pytest.raises(ValidationError):
            WatchtowerConfig.model_validate(
                {
                    "duplicate_alert_delay": 0,
                    "fuel_client_watcher": {"connection_alert": {"alert_level": "Loud"}},
                }
            )

    def test_unknown_rule_key_rejected(self):
        """Test that typos inside a rule are caught."""
        with pytest.raises(ValidationError):
            WatchtowerConfig.model_validate(
                {
                    "duplicate_alert_delay": 0,
                    "ethereum_client_watcher": {
                        "block_production_alert": {"alert_level": "Warn", "max_blocktime": 5}
                    },
                }
            )

    def test_unknown_top_level_key_ignored(self):
        """Test that legacy top-level keys are tolerated."""
        config = WatchtowerConfig.model_validate({"duplicate_alert_delay": 0, "alert_cache_size": 100})
        assert config.duplicate_alert_delay == 0

    def test_non_hex_token_address_rejected(self):
        """Test token address validation."""
        with pytest.raises(ValidationError):
            WatchtowerConfig.model_validate(
                {
                    "duplicate_alert_delay": 0,
                    "ethereum_client_watcher": {
                        "gateway_deposit_alerts": [{"alert_level": "Info", "token_address": "0xnothex"}]
                    },
                }
            )

    def test_duplicate_identity_rejected(self):
        """Test that two rules with the same identity are rejected."""
        rule = {"alert_level": "Warn", "time_frame": 60, "amount": 5}
        with pytest.raises(ValidationError, match="Duplicate rule"):
            WatchtowerConfig.model_validate(
                {
                    "duplicate_alert_delay": 0,
                    "ethereum_client_watcher": {"portal_deposit_alerts": [rule, {**rule, "amount": 9}]},
                }
            )

    def test_same_token_different_windows_allowed(self, watchtower_config):
        """Test that time_frame distinguishes otherwise equal rules."""
        identities = list(watchtower_config.window_time_frames())
        gateway = [i for i in identities if i.rule_kind is RuleKind.GATEWAY_WITHDRAW]
        assert {i.time_frame for i in gateway} == {60, 300}


class TestRuleIdentity:
    """Tests for identity derivation."""

    def test_portal_rule_has_no_token(self, watchtower_config):
        """Test that portal identities omit the token."""
        rule = watchtower_config.ethereum_client_watcher.portal_deposit_alerts[0]
        identity = rule_identity(ChainSide.ETHEREUM, RuleKind.PORTAL_DEPOSIT, rule)
        assert identity == RuleIdentity(ChainSide.ETHEREUM, RuleKind.PORTAL_DEPOSIT, time_frame=300)

    def test_gateway_rule_carries_token(self, watchtower_config):
        """Test that gateway identities include the token address."""
        rule = watchtower_config.ethereum_client_watcher.gateway_withdraw_alerts[0]
        identity = rule_identity(ChainSide.ETHEREUM, RuleKind.GATEWAY_WITHDRAW, rule)
        assert identity.token_address == TOKEN_ADDRESS
        assert identity.key == f"ethereum:gateway_withdraw:{TOKEN_ADDRESS}:60s"

    def test_iter_rules_skips_disabled(self):
        """Test that disabled rules are not yielded by default."""
        config = WatchtowerConfig.model_validate(
            {
                "duplicate_alert_delay": 0,
                "fuel_client_watcher": {"connection_alert": {"alert_level": "Error"}},
            }
        )
        enabled = list(config.iter_rules())
        everything = list(config.iter_rules(include_disabled=True))

        assert [(side, kind) for side, kind, _ in enabled] == [(ChainSide.FUEL, RuleKind.CONNECTION)]
        assert len(everything) == 6
        assert all(rule.enabled for _, _, rule in enabled)


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load_valid_file(self, tmp_path, config_data):
        """Test loading a valid file."""
        config = load_config(write_config(tmp_path, config_data))
        assert config.duplicate_alert_delay == 300

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(tmp_path / "absent.json")

    def test_malformed_json(self, tmp_path):
        """Test that invalid JSON raises ConfigError."""
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(write_config(tmp_path, "{not json"))

    def test_key_in_file_warns(self, tmp_path, caplog):
        """Test the warning about a private key in the rule file."""
        path = write_config(tmp_path, {"duplicate_alert_delay": 0, "ethereum_wallet_key": "0x" + "1" * 64})
        with caplog.at_level(logging.WARNING):
            config = load_config(path)
        assert config.ethereum_wallet_key is not None
        assert "not safe" in caplog.text
        assert PRIVATE_KEY_ENV_VAR in caplog.text


class TestSettings:
    """Tests for environment settings."""

    def test_defaults(self, clean_env):
        """Test settings defaults with an empty environment."""
        settings = Settings()
        assert settings.config_path == Path("watchtower_config.json")
        assert settings.tick_interval_seconds == 5.0
        assert settings.fuel.poll_interval_seconds == 6.0
        assert settings.ethereum.max_retries == 2
        assert settings.pagerduty.enabled is False
        assert settings.webhook.enabled is False
        assert settings.dry_run is False

    def test_environment_overrides(self, clean_env):
        """Test that environment variables are read."""
        clean_env.setenv("FUEL_GRAPHQL_URL", "https://fuel.example.org/v1/graphql")
        clean_env.setenv("PAGERDUTY_API_KEY", "routing-key")
        clean_env.setenv("LOG_LEVEL", "DEBUG")
        clean_env.setenv("DRY_RUN", "true")

        settings = Settings()
        assert settings.fuel.graphql_url == "https://fuel.example.org/v1/graphql"
        assert settings.pagerduty.enabled is True
        assert settings.get_logging_level() == logging.DEBUG
        assert settings.dry_run is True

    def test_invalid_url_rejected(self, clean_env):
        """Test URL validation."""
        clean_env.setenv("ETHEREUM_RPC_URL", "ws://eth.example.org")
        with pytest.raises(ValidationError):
            Settings()

    def test_redacted_summary_hides_key(self, clean_env):
        """Test that the private key never appears in the summary."""
        clean_env.setenv(PRIVATE_KEY_ENV_VAR, "0x" + "5" * 64)
        summary = Settings().redacted_summary()
        assert summary["ethereum"]["private_key"] == "(set)"
        assert "5555" not in json.dumps(summary)

    def test_get_settings_is_cached(self, clean_env):
        """Test the settings singleton."""
        assert get_settings() is get_settings()


class TestResolveEndpoints:
    """Tests for merging endpoints from the environment and the rule file."""

    def _file_config(self, **extra: Any) -> WatchtowerConfig:
        return WatchtowerConfig.model_validate(
            {
                "duplicate_alert_delay": 0,
                "fuel_graphql": "https://file-fuel.example.org",
                "ethereum_rpc": "https://file-eth.example.org",
                "state_contract_address": "0x" + "11" * 20,
                "portal_contract_address": "0x" + "22" * 20,
                "gateway_contract_address": "0x" + "33" * 20,
                **extra,
            }
        )

    def test_file_values_used_when_env_missing(self, clean_env, caplog):
        """Test fallback to the rule file and the read-only warning."""
        with caplog.at_level(logging.WARNING):
            endpoints = resolve_endpoints(Settings(), self._file_config())
        assert endpoints.fuel_graphql_url == "https://file-fuel.example.org"
        assert endpoints.read_only is True
        assert "environment variable not specified" in caplog.text

    def test_environment_wins(self, clean_env):
        """Test that environment values take precedence."""
        clean_env.setenv("ETHEREUM_RPC_URL", "https://env-eth.example.org")
        clean_env.setenv(PRIVATE_KEY_ENV_VAR, "0x" + "5" * 64)
        endpoints = resolve_endpoints(Settings(), self._file_config(ethereum_wallet_key="0x" + "6" * 64))
        assert endpoints.ethereum_rpc_url == "https://env-eth.example.org"
        assert endpoints.private_key == "0x" + "5" * 64
        assert endpoints.read_only is False

    def test_missing_endpoint_raises(self, clean_env):
        """Test that a missing endpoint is a configuration error."""
        config = WatchtowerConfig.model_validate({"duplicate_alert_delay": 0})
        with pytest.raises(ConfigError, match="FUEL_GRAPHQL_URL"):
            resolve_endpoints(Settings(), config)
