"""Chain observation events produced by the watchers.

Every watcher turns whatever its chain client returns into one of the
frozen event types below. The engine only ever sees these types, so chain
specifics (RPC payloads, GraphQL shapes, log layouts) stop at the watcher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar

NATIVE_TOKEN_ADDRESS = "0x" + "0" * 64


class EventDecodeError(Exception):
    """Raised when a payload cannot be decoded into an event."""


class ChainSide(str, Enum):
    """The two chains the watchtower observes."""

    FUEL = "fuel"
    ETHEREUM = "ethereum"


class Direction(str, Enum):
    """Direction of a bridge transfer."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class ContractKind(str, Enum):
    """Bridge contract a transfer went through."""

    PORTAL = "portal"
    GATEWAY = "gateway"


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


def normalize_address(address: str) -> str:
    """Lowercase a hex address and make sure it carries the 0x prefix."""
    address = address.strip().lower()
    if not address.startswith("0x"):
        address = "0x" + address
    return address


def _address_value(address: str) -> int | None:
    try:
        return int(normalize_address(address), 16)
    except ValueError:
        return None


@dataclass(frozen=True)
class Token:
    """A bridged asset. The zero address is the chain's base asset."""

    address: str = NATIVE_TOKEN_ADDRESS
    name: str = "ETH"

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))

    @property
    def is_native(self) -> bool:
        return _address_value(self.address) == 0

    def matches(self, address: str) -> bool:
        """Compare addresses numerically so 20 and 32 byte encodings agree."""
        mine = _address_value(self.address)
        other = _address_value(address)
        if mine is None or other is None:
            return self.address == normalize_address(address)
        return mine == other

    def to_dict(self) -> dict[str, str]:
        return {"address": self.address, "name": self.name}


@dataclass(frozen=True)
class Connectivity:
    """Result of a connection check against a chain endpoint."""

    EVENT_TYPE: ClassVar[str] = "connectivity"

    chain: ChainSide
    connected: bool
    observed_at: datetime
    error: str | None = None

    def __post_init__(self) -> None:
        _require_aware(self.observed_at, "observed_at")

    @property
    def timestamp(self) -> datetime:
        return self.observed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "chain": self.chain.value,
            "connected": self.connected,
            "observed_at": self.observed_at.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class BlockProduced:
    """A new chain head was observed.

    ``observed_at`` is when the watcher saw the block, not the block's own
    timestamp. Block production latency is measured against it.
    """

    EVENT_TYPE: ClassVar[str] = "block_produced"

    chain: ChainSide
    height: int
    observed_at: datetime

    def __post_init__(self) -> None:
        _require_aware(self.observed_at, "observed_at")
        if self.height < 0:
            raise ValueError("height must be >= 0")

    @property
    def timestamp(self) -> datetime:
        return self.observed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "chain": self.chain.value,
            "height": self.height,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class BalanceSample:
    """Balance of the operator account, in whole native token units."""

    EVENT_TYPE: ClassVar[str] = "balance_sample"

    chain: ChainSide
    account: str
    balance: Decimal
    observed_at: datetime

    def __post_init__(self) -> None:
        _require_aware(self.observed_at, "observed_at")

    @property
    def timestamp(self) -> datetime:
        return self.observed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "chain": self.chain.value,
            "account": self.account,
            "balance": str(self.balance),
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class ValueTransfer:
    """A deposit or withdrawal through one of the bridge contracts.

    ``amount`` is already scaled to whole token units.
    """

    EVENT_TYPE: ClassVar[str] = "value_transfer"

    chain: ChainSide
    direction: Direction
    contract: ContractKind
    amount: Decimal
    occurred_at: datetime
    token: Token = field(default_factory=Token)

    def __post_init__(self) -> None:
        _require_aware(self.occurred_at, "occurred_at")
        if self.amount < 0:
            raise ValueError("amount must be >= 0")

    @property
    def timestamp(self) -> datetime:
        return self.occurred_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "chain": self.chain.value,
            "direction": self.direction.value,
            "contract": self.contract.value,
            "amount": str(self.amount),
            "occurred_at": self.occurred_at.isoformat(),
            "token": self.token.to_dict(),
        }


@dataclass(frozen=True)
class StateCommit:
    """A block commitment seen on the Ethereum state contract."""

    EVENT_TYPE: ClassVar[str] = "state_commit"

    valid: bool
    commit_hash: str
    observed_at: datetime

    def __post_init__(self) -> None:
        _require_aware(self.observed_at, "observed_at")

    @property
    def chain(self) -> ChainSide:
        return ChainSide.ETHEREUM

    @property
    def timestamp(self) -> datetime:
        return self.observed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "valid": self.valid,
            "commit_hash": self.commit_hash,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class CheckTick:
    """Periodic clock signal for time-based rules."""

    EVENT_TYPE: ClassVar[str] = "check_tick"

    chain: ChainSide
    observed_at: datetime

    def __post_init__(self) -> None:
        _require_aware(self.observed_at, "observed_at")

    @property
    def timestamp(self) -> datetime:
        return self.observed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.EVENT_TYPE,
            "chain": self.chain.value,
            "observed_at": self.observed_at.isoformat(),
        }


Event = Connectivity | BlockProduced | BalanceSample | ValueTransfer | StateCommit | CheckTick

EVENT_TYPES: tuple[type, ...] = (
    Connectivity,
    BlockProduced,
    BalanceSample,
    ValueTransfer,
    StateCommit,
    CheckTick,
)


def _parse_datetime(raw: Any, name: str) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        value = datetime.fromisoformat(raw)
    else:
        raise EventDecodeError(f"{name} must be an ISO-8601 string")
    if value.tzinfo is None:
        raise EventDecodeError(f"{name} must be timezone-aware")
    return value


def _parse_decimal(raw: Any, name: str) -> Decimal:
    try:
        value = Decimal(str(raw))
    except InvalidOperation as e:
        raise EventDecodeError(f"{name} is not a number: {raw!r}") from e
    if not value.is_finite():
        raise EventDecodeError(f"{name} must be finite, got {raw!r}")
    return value


def _parse_bool(raw: Any, name: str) -> bool:
    if not isinstance(raw, bool):
        raise EventDecodeError(f"{name} must be a boolean, got {raw!r}")
    return raw


def decode_event(data: dict[str, Any]) -> Event:
    """Decode the dictionary form produced by ``Event.to_dict()``.

    Raises:
        EventDecodeError: If the payload is malformed.
    """
    if not isinstance(data, dict):
        raise EventDecodeError(f"Event payload must be a mapping, got {type(data).__name__}")

    event_type = data.get("type")
    try:
        if event_type == Connectivity.EVENT_TYPE:
            return Connectivity(
                chain=ChainSide(data["chain"]),
                connected=_parse_bool(data["connected"], "connected"),
                observed_at=_parse_datetime(data["observed_at"], "observed_at"),
                error=data.get("error"),
            )
        if event_type == BlockProduced.EVENT_TYPE:
            return BlockProduced(
                chain=ChainSide(data["chain"]),
                height=int(data["height"]),
                observed_at=_parse_datetime(data["observed_at"], "observed_at"),
            )
        if event_type == BalanceSample.EVENT_TYPE:
            return BalanceSample(
                chain=ChainSide(data["chain"]),
                account=str(data["account"]),
                balance=_parse_decimal(data["balance"], "balance"),
                observed_at=_parse_datetime(data["observed_at"], "observed_at"),
            )
        if event_type == ValueTransfer.EVENT_TYPE:
            token_raw = data.get("token") or {}
            return ValueTransfer(
                chain=ChainSide(data["chain"]),
                direction=Direction(data["direction"]),
                contract=ContractKind(data["contract"]),
                amount=_parse_decimal(data["amount"], "amount"),
                occurred_at=_parse_datetime(data["occurred_at"], "occurred_at"),
                token=Token(
                    address=str(token_raw.get("address", NATIVE_TOKEN_ADDRESS)),
                    name=str(token_raw.get("name", "ETH")),
                ),
            )
        if event_type == StateCommit.EVENT_TYPE:
            return StateCommit(
                valid=_parse_bool(data["valid"], "valid"),
                commit_hash=str(data["commit_hash"]),
                observed_at=_parse_datetime(data["observed_at"], "observed_at"),
            )
        if event_type == CheckTick.EVENT_TYPE:
            return CheckTick(
                chain=ChainSide(data["chain"]),
                observed_at=_parse_datetime(data["observed_at"], "observed_at"),
            )
    except EventDecodeError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise EventDecodeError(f"Malformed {event_type} event: {e}") from e

    raise EventDecodeError(f"Unknown event type: {event_type!r}")
