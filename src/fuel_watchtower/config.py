"""Configuration management with Pydantic Settings.

Two sources feed the watchtower:

- the JSON rule file (``WatchtowerConfig``), which describes what to alert
  on and how loudly; it is loaded once at startup and never reloaded.
- environment variables (``Settings``), which carry endpoints, secrets and
  process level switches, with ``.env`` support via python-dotenv.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from fuel_watchtower.engine.models import AlertAction, AlertLevel, RuleIdentity, RuleKind
from fuel_watchtower.watcher.models import NATIVE_TOKEN_ADDRESS, ChainSide, normalize_address

logger = logging.getLogger(__name__)

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

PRIVATE_KEY_ENV_VAR = "WATCHTOWER_ETH_PRIVATE_KEY"
PAGERDUTY_EVENTS_URL = "https://events.eu.pagerduty.com/v2/enqueue"


class ConfigError(Exception):
    """Raised when the watchtower cannot be configured."""


# ---------------------------------------------------------------------------
# Rule file
# ---------------------------------------------------------------------------


class GenericAlert(BaseModel):
    """Rule with only a level and an optional action."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    alert_level: AlertLevel = AlertLevel.NONE
    alert_action: AlertAction = AlertAction.NONE

    @field_validator("alert_level", mode="before")
    @classmethod
    def parse_level(cls, v: object) -> AlertLevel:
        if isinstance(v, (str, int)):
            return AlertLevel.parse(v)
        return v  # type: ignore[return-value]

    @property
    def enabled(self) -> bool:
        return self.alert_level is not AlertLevel.NONE


class BlockProductionAlert(GenericAlert):
    max_block_time: int = Field(default=60, gt=0, description="Seconds without a new block")


class AccountFundsAlert(GenericAlert):
    min_balance: Decimal = Field(default=Decimal("0.1"), ge=0, description="Minimum balance in ETH")


class TransferAlert(GenericAlert):
    """Windowed amount rule for portal or gateway transfers."""

    token_name: str = "ETH"
    token_address: str = NATIVE_TOKEN_ADDRESS
    token_decimals: int = Field(default=18, ge=0, le=36, description="Decimals of gateway token amounts")
    time_frame: int = Field(default=300, gt=0, description="Window size in seconds")
    amount: Decimal = Field(default=Decimal(1000), ge=0, description="Threshold in whole tokens")

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str) -> str:
        v = normalize_address(v)
        try:
            int(v, 16)
        except ValueError as e:
            raise ValueError(f"token_address must be hex, got {v!r}") from e
        return v


class FuelTransferAlert(TransferAlert):
    token_decimals: int = Field(default=9, ge=0, le=36)


class FuelClientWatcher(BaseModel):
    """Rules evaluated against Fuel chain events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    connection_alert: GenericAlert = Field(default_factory=GenericAlert)
    block_production_alert: BlockProductionAlert = Field(default_factory=BlockProductionAlert)
    portal_deposit_alerts: tuple[FuelTransferAlert, ...] = ()
    portal_withdraw_alerts: tuple[FuelTransferAlert, ...] = ()
    gateway_deposit_alerts: tuple[FuelTransferAlert, ...] = ()
    gateway_withdraw_alerts: tuple[FuelTransferAlert, ...] = ()


class EthereumClientWatcher(BaseModel):
    """Rules evaluated against Ethereum chain events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    connection_alert: GenericAlert = Field(default_factory=GenericAlert)
    block_production_alert: BlockProductionAlert = Field(default_factory=BlockProductionAlert)
    account_funds_alert: AccountFundsAlert = Field(default_factory=AccountFundsAlert)
    invalid_state_commit_alert: GenericAlert = Field(default_factory=GenericAlert)
    portal_deposit_alerts: tuple[TransferAlert, ...] = ()
    portal_withdraw_alerts: tuple[TransferAlert, ...] = ()
    gateway_deposit_alerts: tuple[TransferAlert, ...] = ()
    gateway_withdraw_alerts: tuple[TransferAlert, ...] = ()


_SINGLE_RULES: tuple[tuple[str, RuleKind], ...] = (
    ("connection_alert", RuleKind.CONNECTION),
    ("block_production_alert", RuleKind.BLOCK_PRODUCTION),
    ("account_funds_alert", RuleKind.ACCOUNT_FUNDS),
    ("invalid_state_commit_alert", RuleKind.INVALID_STATE_COMMIT),
)

_LIST_RULES: tuple[tuple[str, RuleKind], ...] = (
    ("portal_deposit_alerts", RuleKind.PORTAL_DEPOSIT),
    ("portal_withdraw_alerts", RuleKind.PORTAL_WITHDRAW),
    ("gateway_deposit_alerts", RuleKind.GATEWAY_DEPOSIT),
    ("gateway_withdraw_alerts", RuleKind.GATEWAY_WITHDRAW),
)


def rule_identity(side: ChainSide, kind: RuleKind, rule: GenericAlert) -> RuleIdentity:
    """Derive the identity of a configured rule."""
    token_address: str | None = None
    time_frame: int | None = None
    if isinstance(rule, TransferAlert):
        time_frame = rule.time_frame
        if kind in (RuleKind.GATEWAY_DEPOSIT, RuleKind.GATEWAY_WITHDRAW):
            token_address = rule.token_address
    return RuleIdentity(
        chain_side=side,
        rule_kind=kind,
        token_address=token_address,
        time_frame=time_frame,
    )


class WatchtowerConfig(BaseModel):
    """The JSON rule file.

    Example:
        ```json
        {
          "duplicate_alert_delay": 300,
          "fuel_client_watcher": {
            "block_production_alert": {"alert_level": "Warn", "max_block_time": 20}
          },
          "ethereum_client_watcher": {
            "invalid_state_commit_alert": {"alert_level": "Error", "alert_action": "PauseAll"}
          }
        }
        ```
    """

    # Older rule files carry cache tuning keys that no longer apply
    model_config = ConfigDict(frozen=True, extra="ignore")

    duplicate_alert_delay: int = Field(ge=0, description="Cool-down in seconds per alert identity")
    fuel_client_watcher: FuelClientWatcher = Field(default_factory=FuelClientWatcher)
    ethereum_client_watcher: EthereumClientWatcher = Field(default_factory=EthereumClientWatcher)

    fuel_graphql: str | None = None
    ethereum_rpc: str | None = None
    state_contract_address: str | None = None
    portal_contract_address: str | None = None
    gateway_contract_address: str | None = None
    ethereum_wallet_key: SecretStr | None = None

    @model_validator(mode="after")
    def check_unique_identities(self) -> WatchtowerConfig:
        seen: set[RuleIdentity] = set()
        for side, kind, rule in self.iter_rules(include_disabled=True):
            identity = rule_identity(side, kind, rule)
            if identity in seen:
                raise ValueError(f"Duplicate rule {identity.key}")
            seen.add(identity)
        return self

    def watcher_for(self, side: ChainSide) -> FuelClientWatcher | EthereumClientWatcher:
        if side is ChainSide.FUEL:
            return self.fuel_client_watcher
        return self.ethereum_client_watcher

    def iter_rules(
        self, *, include_disabled: bool = False
    ) -> Iterator[tuple[ChainSide, RuleKind, GenericAlert]]:
        """Yield every configured rule with its chain side and kind."""
        for side in ChainSide:
            watcher = self.watcher_for(side)
            for attr, kind in _SINGLE_RULES:
                rule = getattr(watcher, attr, None)
                if rule is not None and (include_disabled or rule.enabled):
                    yield side, kind, rule
            for attr, kind in _LIST_RULES:
                for rule in getattr(watcher, attr):
                    if include_disabled or rule.enabled:
                        yield side, kind, rule

    def window_time_frames(self) -> dict[RuleIdentity, int]:
        """Window size of every enabled windowed rule."""
        return {
            rule_identity(side, kind, rule): rule.time_frame
            for side, kind, rule in self.iter_rules()
            if isinstance(rule, TransferAlert)
        }


def load_config(path: str | Path) -> WatchtowerConfig:
    """Load and validate the JSON rule file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        config = WatchtowerConfig.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    if config.ethereum_wallet_key is not None:
        logger.warning(
            "Specifying the ethereum private key in the config file is not safe. "
            "Please use the %s environment variable instead.",
            PRIVATE_KEY_ENV_VAR,
        )
    return config


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v


class FuelSettings(BaseSettings):
    """Fuel GraphQL endpoint settings."""

    model_config = SettingsConfigDict(env_prefix="FUEL_", extra="ignore")

    graphql_url: str | None = Field(
        default=None,
        alias="FUEL_GRAPHQL_URL",
        description="Fuel GraphQL endpoint",
    )
    poll_interval_seconds: float = Field(
        default=6.0,
        alias="FUEL_POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=3600,
        description="Fuel watcher polling cadence",
    )

    @field_validator("graphql_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return _validate_http_url(v)


class EthereumSettings(BaseSettings):
    """Ethereum RPC, contract and signer settings."""

    model_config = SettingsConfigDict(env_prefix="ETHEREUM_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="ETHEREUM_RPC_URL",
        description="Primary Ethereum RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="ETHEREUM_FALLBACK_RPC_URL",
        description="Fallback Ethereum RPC endpoint",
    )
    state_contract_address: str | None = Field(default=None, alias="STATE_CONTRACT_ADDRESS")
    portal_contract_address: str | None = Field(default=None, alias="PORTAL_CONTRACT_ADDRESS")
    gateway_contract_address: str | None = Field(default=None, alias="GATEWAY_CONTRACT_ADDRESS")
    account_address: str | None = Field(
        default=None,
        alias="ETHEREUM_ACCOUNT_ADDRESS",
        description="Account whose balance is sampled (defaults to the signer)",
    )
    private_key: SecretStr | None = Field(
        default=None,
        alias=PRIVATE_KEY_ENV_VAR,
        description="Signer for pause transactions; unset means read-only",
    )
    poll_interval_seconds: float = Field(
        default=6.0,
        alias="ETHEREUM_POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=3600,
        description="Ethereum watcher polling cadence",
    )
    max_retries: int = Field(
        default=2,
        alias="ETHEREUM_MAX_RETRIES",
        ge=1,
        le=10,
        description="RPC attempts per endpoint before giving up",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return _validate_http_url(v)


class PagerDutySettings(BaseSettings):
    """PagerDuty Events v2 settings."""

    model_config = SettingsConfigDict(env_prefix="PAGERDUTY_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="PAGERDUTY_API_KEY",
        description="PagerDuty routing key",
    )
    events_url: str = Field(
        default=PAGERDUTY_EVENTS_URL,
        alias="PAGERDUTY_EVENTS_URL",
        description="PagerDuty Events API endpoint",
    )

    @property
    def enabled(self) -> bool:
        """Check if PagerDuty notifications are enabled."""
        return self.api_key is not None


class WebhookSettings(BaseSettings):
    """Generic JSON webhook settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    url: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_URL",
        description="URL receiving a JSON POST per alert",
    )

    @property
    def enabled(self) -> bool:
        """Check if webhook notifications are enabled."""
        return self.url is not None


class Settings(BaseSettings):
    """Main application settings.

    Example:
        ```python
        from fuel_watchtower.config import get_settings, load_config

        settings = get_settings()
        config = load_config(settings.config_path)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: nested groups need the same env_file or they ignore `.env`.
    fuel: FuelSettings = Field(
        default_factory=lambda: FuelSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ethereum: EthereumSettings = Field(
        default_factory=lambda: EthereumSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pagerduty: PagerDutySettings = Field(
        default_factory=lambda: PagerDutySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    webhook: WebhookSettings = Field(
        default_factory=lambda: WebhookSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    config_path: Path = Field(
        default=Path("watchtower_config.json"),
        alias="WATCHTOWER_CONFIG",
        description="Path of the JSON rule file",
    )
    tick_interval_seconds: float = Field(
        default=5.0,
        alias="TICK_INTERVAL_SECONDS",
        ge=0.1,
        le=3600,
        description="Cadence of block production checks",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Evaluate rules without notifying or pausing",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "config_path": str(self.config_path),
            "fuel": {
                "graphql_url": self.fuel.graphql_url or "(not set)",
                "poll_interval_seconds": str(self.fuel.poll_interval_seconds),
            },
            "ethereum": {
                "rpc_url": self.ethereum.rpc_url or "(not set)",
                "fallback_rpc_url": self.ethereum.fallback_rpc_url or "(not set)",
                "private_key": "(set)" if self.ethereum.private_key else "(not set)",
                "poll_interval_seconds": str(self.ethereum.poll_interval_seconds),
            },
            "pagerduty_enabled": str(self.pagerduty.enabled),
            "webhook_enabled": str(self.webhook.enabled),
            "tick_interval_seconds": str(self.tick_interval_seconds),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }


@dataclass(frozen=True)
class ChainEndpoints:
    """Endpoints and contracts after merging the environment with the rule file."""

    fuel_graphql_url: str
    ethereum_rpc_url: str
    state_contract_address: str
    portal_contract_address: str
    gateway_contract_address: str
    ethereum_fallback_rpc_url: str | None = None
    private_key: str | None = None
    account_address: str | None = None

    @property
    def read_only(self) -> bool:
        return self.private_key is None


def resolve_endpoints(settings: Settings, config: WatchtowerConfig) -> ChainEndpoints:
    """Merge endpoint settings; the environment wins over the rule file.

    Raises:
        ConfigError: If a required endpoint or contract address is missing.
    """
    eth = settings.ethereum

    def pick(name: str, env_value: str | None, file_value: str | None) -> str:
        value = env_value or file_value
        if not value:
            raise ConfigError(f"{name} is required (environment or config file)")
        return value

    private_key: str | None = None
    if eth.private_key is not None:
        private_key = eth.private_key.get_secret_value()
    elif config.ethereum_wallet_key is not None:
        private_key = config.ethereum_wallet_key.get_secret_value()
    else:
        logger.warning(
            "%s environment variable not specified. Some alerts and actions have been disabled.",
            PRIVATE_KEY_ENV_VAR,
        )

    return ChainEndpoints(
        fuel_graphql_url=pick("FUEL_GRAPHQL_URL", settings.fuel.graphql_url, config.fuel_graphql),
        ethereum_rpc_url=pick("ETHEREUM_RPC_URL", eth.rpc_url, config.ethereum_rpc),
        state_contract_address=pick(
            "STATE_CONTRACT_ADDRESS", eth.state_contract_address, config.state_contract_address
        ),
        portal_contract_address=pick(
            "PORTAL_CONTRACT_ADDRESS", eth.portal_contract_address, config.portal_contract_address
        ),
        gateway_contract_address=pick(
            "GATEWAY_CONTRACT_ADDRESS", eth.gateway_contract_address, config.gateway_contract_address
        ),
        ethereum_fallback_rpc_url=eth.fallback_rpc_url,
        private_key=private_key,
        account_address=eth.account_address,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
