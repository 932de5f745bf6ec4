"""Chain watchers - polling Fuel and Ethereum and emitting events."""

from fuel_watchtower.watcher.models import (
    BalanceSample,
    BlockProduced,
    ChainSide,
    CheckTick,
    Connectivity,
    ContractKind,
    Direction,
    Event,
    EventDecodeError,
    StateCommit,
    Token,
    ValueTransfer,
    decode_event,
)

__all__ = [
    "BalanceSample",
    "BlockProduced",
    "ChainSide",
    "CheckTick",
    "Connectivity",
    "ContractKind",
    "Direction",
    "Event",
    "EventDecodeError",
    "StateCommit",
    "Token",
    "ValueTransfer",
    "decode_event",
]
