"""Alert engine - rule evaluation, windowing and deduplication."""

from fuel_watchtower.engine.dedup import Deduplicator
from fuel_watchtower.engine.models import (
    Alert,
    AlertAction,
    AlertDetail,
    AlertLevel,
    RuleIdentity,
    RuleKind,
)
from fuel_watchtower.engine.window import WindowAggregator, WindowError

__all__ = [
    "Alert",
    "AlertAction",
    "AlertDetail",
    "AlertLevel",
    "Deduplicator",
    "RuleIdentity",
    "RuleKind",
    "WindowAggregator",
    "WindowError",
]
