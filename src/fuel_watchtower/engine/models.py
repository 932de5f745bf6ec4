"""Data models for the alert engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from fuel_watchtower.watcher.models import ChainSide, normalize_address


class AlertLevel(IntEnum):
    """Alert severity. ``NONE`` disables a rule."""

    NONE = 0
    INFO = 1
    WARN = 2
    ERROR = 3

    @classmethod
    def parse(cls, value: str | int | AlertLevel) -> AlertLevel:
        """Parse a level from its config name ("None", "Info", "Warn", "Error")."""
        if isinstance(value, AlertLevel):
            return value
        if isinstance(value, int):
            return cls(value)
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        try:
            return cls[name]
        except KeyError as e:
            raise ValueError(f"Unknown alert level: {value!r}") from e

    @property
    def label(self) -> str:
        return self.name.capitalize()


class AlertAction(str, Enum):
    """Protective action attached to an alert."""

    NONE = "None"
    PAUSE_STATE = "PauseState"
    PAUSE_GATEWAY = "PauseGateway"
    PAUSE_PORTAL = "PausePortal"
    PAUSE_ALL = "PauseAll"

    @property
    def is_pause(self) -> bool:
        return self is not AlertAction.NONE


class RuleKind(str, Enum):
    """Closed set of rule kinds the evaluator knows how to run."""

    CONNECTION = "connection"
    BLOCK_PRODUCTION = "block_production"
    ACCOUNT_FUNDS = "account_funds"
    INVALID_STATE_COMMIT = "invalid_state_commit"
    PORTAL_DEPOSIT = "portal_deposit"
    PORTAL_WITHDRAW = "portal_withdraw"
    GATEWAY_DEPOSIT = "gateway_deposit"
    GATEWAY_WITHDRAW = "gateway_withdraw"

    @property
    def is_windowed(self) -> bool:
        return self in _WINDOWED_KINDS


_WINDOWED_KINDS = frozenset(
    {
        RuleKind.PORTAL_DEPOSIT,
        RuleKind.PORTAL_WITHDRAW,
        RuleKind.GATEWAY_DEPOSIT,
        RuleKind.GATEWAY_WITHDRAW,
    }
)


@dataclass(frozen=True)
class RuleIdentity:
    """Key of one configured rule.

    Built from configuration only, never from the value that tripped the
    rule, so repeated breaches of one rule share an identity while rules
    with different windows or tokens stay apart.
    """

    chain_side: ChainSide
    rule_kind: RuleKind
    token_address: str | None = None
    time_frame: int | None = None

    def __post_init__(self) -> None:
        if self.token_address is not None:
            object.__setattr__(self, "token_address", normalize_address(self.token_address))

    @property
    def key(self) -> str:
        parts = [self.chain_side.value, self.rule_kind.value]
        if self.token_address is not None:
            parts.append(self.token_address)
        if self.time_frame is not None:
            parts.append(f"{self.time_frame}s")
        return ":".join(parts)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class AlertDetail:
    """Human readable part of an alert plus the values that triggered it."""

    title: str
    description: str
    values: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "values": dict(self.values),
        }


@dataclass(frozen=True)
class Alert:
    """An alert raised by a rule."""

    identity: RuleIdentity
    level: AlertLevel
    fired_at: datetime
    detail: AlertDetail
    action: AlertAction = AlertAction.NONE

    def __post_init__(self) -> None:
        if self.fired_at.tzinfo is None:
            raise ValueError("fired_at must be timezone-aware")

    @property
    def chain_side(self) -> ChainSide:
        return self.identity.chain_side

    @property
    def rule_kind(self) -> RuleKind:
        return self.identity.rule_kind

    @property
    def title(self) -> str:
        return self.detail.title

    @property
    def description(self) -> str:
        return self.detail.description

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.key,
            "level": self.level.label,
            "chain_side": self.chain_side.value,
            "rule_kind": self.rule_kind.value,
            "fired_at": self.fired_at.isoformat(),
            "detail": self.detail.to_dict(),
            "action": self.action.value,
        }
